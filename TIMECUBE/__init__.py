"""
TIMECUBE: resample irregularly timed instrument frames onto a regular time
grid and write the result as a FITS cube.

Configuration/   path and resampling configuration
Utility/         MANIFEST (scan + manifest build), RESAMPLE (cube build),
                 PIPELINE (stage manager)
"""

__version__ = "0.1.0"

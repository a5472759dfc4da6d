"""
ChronoGenomics - privacy-preserving chronotype analysis of genetic markers.

Records hold an encoded payload, are analysed off the caller's path and end up
with a chronotype and a recommended sleep schedule.
"""

__version__ = "0.1.0"
__author__ = "ChronoGenomics Team"

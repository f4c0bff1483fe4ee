"""
ReelCut - Caption compositing and export for short-form video clips

Burns styled, animated captions into a trimmed slice of a source video and
encodes the result to MP4, with the original audio when it can be recovered.
"""

__version__ = "0.1.0"
__author__ = "ReelCut Contributors"
__license__ = "MIT"

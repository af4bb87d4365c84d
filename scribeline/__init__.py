"""
Scribeline - supervised batch transcription with an external Whisper CLI.

Coordinates per-file jobs through a four-stage pipeline: audio extraction
from (possibly damaged) video → supervised transcription subprocess with live
progress → report parsing → optional speaker attribution.
"""

__version__ = "0.1.0"

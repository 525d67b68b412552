"""
longform-tts: long-running speech synthesis job orchestration.
"""

__version__ = "0.1.0"

"""
MedChat client engine.

Session and message orchestration for multi-session conversations with a
streaming answering backend.
"""

__version__ = "0.1.0"

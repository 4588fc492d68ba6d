"""
Codex Bridge CLI - command-line surface for the chat bridge.

Usage:
    codex-bridge chat                # Interactive chat (default session)
    codex-bridge send "question"     # One turn, streamed to stdout
    codex-bridge sessions            # List stored sessions
    codex-bridge process notes.md    # Rewrite a document with the prompt template
"""

__version__ = "0.1.0"

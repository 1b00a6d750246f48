"""SafeShell - checkpoints and undo for destructive shell commands.

Backs up the files a command is about to touch, so they can be diffed
against and restored afterwards.
"""

__version__ = "1.0.0"

"""Core evaluation engine subsystems."""

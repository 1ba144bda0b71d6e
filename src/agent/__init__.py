"""Agent turns and conversation persistence."""

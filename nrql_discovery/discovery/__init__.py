"""Discovery phases, run state and its persistence."""

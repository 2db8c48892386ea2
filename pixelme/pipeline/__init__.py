"""Pipeline stage tracking, undo, history and composition hand-off."""

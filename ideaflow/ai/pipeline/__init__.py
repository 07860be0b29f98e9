"""Pipeline phases, stage contracts and session state."""

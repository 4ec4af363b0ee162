"""Wire-level helpers for the Urevo scale advertisements."""

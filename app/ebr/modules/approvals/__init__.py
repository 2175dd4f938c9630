"""Change / approval requests against locked sections."""

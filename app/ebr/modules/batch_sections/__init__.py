"""Versioned batch record sections and their status propagation."""

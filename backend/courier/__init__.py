"""Courier: real-time direct and community messaging."""

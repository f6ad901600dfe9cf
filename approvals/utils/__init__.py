"""
Shared utilities: structured audit events and the injectable clock.
"""

"""Game domain services.

Pure(ish) domain logic imported by HTTP routes, socket handlers and the
auto-call driver, keeping transport concerns away from the game rules.
"""

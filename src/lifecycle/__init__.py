"""Application lifecycle engine.

Materializes app templates into cluster objects phase by phase, tracks them
in an application Context, validates convergence, and tears them down with
a volume-directory leak check.
"""

"""Core module - configuration, error taxonomy, audit, logging and run types
shared by every billing stage.
"""

__version__ = "1.0.0"

"""Exceptions raised at the persistence and configuration seams."""


class ScannerError(Exception):
    """Base exception for LAN scanner errors."""
    pass


class PersistenceError(ScannerError):
    """Reading or writing the device snapshot failed."""
    pass


class ConfigError(ScannerError):
    """Configuration could not be loaded."""
    pass

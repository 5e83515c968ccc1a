"""DCAFlow - Incremental DCA buy ladder with take-profit exit."""

__version__ = "0.4.0"

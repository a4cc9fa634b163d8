"""Backend services for the Trellix ePO SaaS management portal."""

__version__ = "0.1.0"

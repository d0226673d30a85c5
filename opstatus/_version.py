__version__ = "1.2.0"

PRODUCER_VERSION = f"opstatus/{__version__}"

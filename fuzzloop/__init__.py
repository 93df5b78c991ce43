"""fuzzloop: run Go fuzz targets continuously in parallel until stopped."""

__version__ = "0.1.0"

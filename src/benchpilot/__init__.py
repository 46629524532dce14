"""benchpilot — run benchmarks across interchangeable backends and compare them."""

__version__ = "0.1.0"

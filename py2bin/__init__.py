"""py2bin.

Turns a Python app into a single native executable by patching its encoded
source into a pre-built CPython "carrier" binary, without recompiling.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"

"""Exception root for py2bin tooling errors."""


class Py2binError(RuntimeError):
    """Base class for failures the CLI reports without a traceback."""

"""Carrier-side runtime support.

This subpackage is copied verbatim into the runtime source tree as
``Lib/_py2bin/`` and compiled into every carrier. It must only import the
standard library and its own modules (relatively).
"""

"""Execution backends for benchpilot.

Two interchangeable variants implement the ``Backend`` contract: a
command channel that drives an out-of-process host one request at a
time, and an isolated context that runs a suite inside a long-lived
worker reached by message passing.
"""

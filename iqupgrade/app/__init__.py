"""Application composition layer for the command-line entry point.

``main`` parses operator flags, wires concrete adapters into the upgrade use
cases, and turns the run outcome into a process exit status.
"""

"""Operator command line for the help desk sync engine."""

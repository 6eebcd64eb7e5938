"""Audit plan store and interview planner."""

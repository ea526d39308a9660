"""Coordination layer for a fleet of autonomous coding agents.

Agents are plain OS processes. Everything they share (sessions, the review
queue, refinement cycles, merge conflicts, issue claims and category usage)
lives in one SQLite state store and changes only through compare-and-swap
mutations, so several agent processes and operator commands can work on the
same database without a coordinator process.
"""

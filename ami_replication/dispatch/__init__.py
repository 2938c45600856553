"""Kickoff dispatch and execution starters."""

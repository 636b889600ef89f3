"""Lesson generation, timelines and persistence."""

"""Database fixtures for the triage engine.

Contains seed data for:
- Kingston-area hospital directory
"""

from app.fixtures.hospitals import HOSPITALS, seed_hospitals

__all__ = ["HOSPITALS", "seed_hospitals"]

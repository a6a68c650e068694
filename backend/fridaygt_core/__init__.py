"""Lap time leaderboards and car build editing for FridayGT."""

from .laptime import LapTime
from .leaderboard import Leaderboard, LeaderboardEntry, LeaderboardResults, Statistics, build_leaderboard
from .build_state import BuildDraft, GearRatios, TuningSelection, UpgradeSelection
from .parts import FieldSpec
from .loader import DataStore

__all__ = [
    "LapTime",
    "Leaderboard",
    "LeaderboardEntry",
    "LeaderboardResults",
    "Statistics",
    "build_leaderboard",
    "BuildDraft",
    "GearRatios",
    "TuningSelection",
    "UpgradeSelection",
    "FieldSpec",
    "DataStore",
]

"""
tests/test_badges.py — Badge Level Progression
===============================================
Pure tests for huddle.engine.badges: Bronze → Silver → Gold, goal
doubling, Gold as a terminal milestone, and settings overrides.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from huddle.database.models import BadgeLevel, BadgeType
from huddle.engine.badges import (
    BADGE_POINTS,
    ProgressState,
    apply_progress,
    badge_points,
    initial_goal,
    level_rank,
    next_level,
)


class TestLevelOrder:
    def test_next_level_chain(self):
        assert next_level(BadgeLevel.BRONZE) == BadgeLevel.SILVER
        assert next_level("Silver") == BadgeLevel.GOLD
        assert next_level(BadgeLevel.GOLD) is None

    @pytest.mark.parametrize("level, rank", [("Bronze", 1), ("Silver", 2), ("Gold", 3)])
    def test_rank(self, level, rank):
        assert level_rank(level) == rank


class TestApplyProgress:
    def test_partial_progress_earns_nothing(self):
        result = apply_progress(ProgressState(BadgeLevel.BRONZE, 2, 5))
        assert result.earned_level is None
        assert result.state.progress == 3
        assert result.state.level == BadgeLevel.BRONZE

    def test_reaching_goal_earns_level_and_doubles_goal(self):
        result = apply_progress(ProgressState(BadgeLevel.BRONZE, 4, 5))
        assert result.earned_level == BadgeLevel.BRONZE
        assert result.state == ProgressState(BadgeLevel.SILVER, 0, 10, False)

    def test_increment_caps_at_goal(self):
        result = apply_progress(ProgressState(BadgeLevel.SILVER, 8, 10), increment=50)
        assert result.earned_level == BadgeLevel.SILVER
        assert result.state.level == BadgeLevel.GOLD
        assert result.state.goal == 20

    def test_gold_is_terminal(self):
        result = apply_progress(ProgressState(BadgeLevel.GOLD, 19, 20))
        assert result.earned_level == BadgeLevel.GOLD
        assert result.state.level == BadgeLevel.GOLD
        assert result.state.milestone_achieved is True
        assert result.state.progress == 20

    def test_after_milestone_no_further_progress(self):
        state = ProgressState(BadgeLevel.GOLD, 20, 20, True)
        result = apply_progress(state)
        assert result.earned_level is None
        assert result.state == state

    def test_non_positive_increment_ignored(self):
        state = ProgressState(BadgeLevel.BRONZE, 1, 5)
        assert apply_progress(state, increment=0).state == state


class TestBadgeSettings:
    def test_defaults_without_cache(self):
        assert badge_points(BadgeType.MILESTONE_ACHIEVER) == 100
        assert initial_goal() == 5
        assert set(BADGE_POINTS) == set(BadgeType)

    def test_cache_overrides(self):
        cache = MagicMock()
        cache.get_int.side_effect = lambda key, default: {"badges.helper": 99, "badges.initial_goal": 0}.get(key, default)
        assert badge_points("helper", cache) == 99
        # goal never drops below one
        assert initial_goal(cache) == 1

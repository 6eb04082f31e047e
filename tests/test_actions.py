"""
Tests for the action catalog and actuator delegation.
"""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from world.actions import (
    ActionCatalog, ActionCategory, ACTIONS, ACTION_COUNT,
    BUILDING_ACTIONS, MINING_ACTIONS, COMBAT_ACTIONS, CREATIVE_ACTIONS, SKILL_FOR_ACTION,
)


class RecordingActuator:
    def __init__(self, result=True):
        self.result = result
        self.calls = []

    def execute(self, action_name):
        self.calls.append(action_name)
        return self.result


class RaisingActuator:
    def execute(self, action_name):
        raise RuntimeError("connection lost")


class TestActionCatalog:
    def test_count(self):
        catalog = ActionCatalog()
        assert catalog.count() == ACTION_COUNT == 70
        assert len(catalog) == 70

    def test_round_trip(self):
        catalog = ActionCatalog()
        for i in range(catalog.count()):
            assert catalog.index_of(catalog.name_of(i)) == i

    def test_indices_are_stable(self):
        catalog = ActionCatalog()
        assert catalog.name_of(0) == 'move_forward'
        assert catalog.index_of('idle') == 60
        assert [a.index for a in ACTIONS] == list(range(70))

    def test_unknown_name(self):
        catalog = ActionCatalog()
        with pytest.raises(KeyError):
            catalog.index_of('teleport')
        assert catalog.find('teleport') is None

    def test_out_of_range_index(self):
        catalog = ActionCatalog()
        assert catalog.name_of(-1) == 'unknown'
        assert catalog.name_of(70) == 'unknown'
        assert catalog.category_of(99) is None

    def test_categories(self):
        catalog = ActionCatalog()
        assert catalog.category_of(catalog.index_of('fight_zombie')) == ActionCategory.COMBAT
        assert len(catalog.by_category(ActionCategory.SOCIAL)) == 10
        assert sum(len(catalog.by_category(c)) for c in ActionCategory) == 70

    def test_action_groups_reference_catalog(self):
        names = set(ActionCatalog().names())
        for group in (BUILDING_ACTIONS, MINING_ACTIONS, COMBAT_ACTIONS, CREATIVE_ACTIONS):
            assert group <= names
        assert set(SKILL_FOR_ACTION) <= names

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValueError):
            ActionCatalog(ACTIONS + (ACTIONS[0],))


class TestExecute:
    def test_delegates_by_name(self):
        catalog = ActionCatalog()
        actuator = RecordingActuator()
        assert catalog.execute(catalog.index_of('jump'), actuator) is True
        assert actuator.calls == ['jump']

    def test_reports_failure(self):
        catalog = ActionCatalog()
        assert catalog.execute(0, RecordingActuator(result=False)) is False

    def test_invalid_index(self):
        catalog = ActionCatalog()
        actuator = RecordingActuator()
        assert catalog.execute(500, actuator) is False
        assert actuator.calls == []

    def test_raising_actuator_contained(self):
        catalog = ActionCatalog()
        assert catalog.execute(0, RaisingActuator()) is False

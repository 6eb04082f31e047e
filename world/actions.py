"""
Action Catalog - the discrete action set available to every agent.

Actions range from low-level motion (move, jump) to high-level behaviours
(mine nearest ore, build shelter). The catalog is static metadata: a stable
index <-> name mapping plus categories. Executing an action is delegated to an
external Actuator which performs the blocking world interaction.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class ActionCategory(Enum):
    MOVEMENT = "movement"
    INTERACTION = "interaction"
    GATHER = "gather"
    COMBAT = "combat"
    CRAFT = "craft"
    SOCIAL = "social"
    BUILDING = "building"
    UTILITY = "utility"


@dataclass(frozen=True)
class ActionSpec:
    index: int
    name: str
    category: ActionCategory


_CATALOG_LAYOUT: List[Tuple[ActionCategory, Tuple[str, ...]]] = [
    (ActionCategory.MOVEMENT, (
        'move_forward', 'move_backward', 'move_left', 'move_right', 'jump',
        'sneak', 'stop_moving', 'sprint', 'look_around', 'random_walk')),
    (ActionCategory.INTERACTION, (
        'dig_forward', 'dig_down', 'dig_up', 'place_block', 'attack_nearest',
        'use_item', 'equip_best_tool', 'eat_food', 'open_nearby_chest',
        'activate_block')),
    (ActionCategory.GATHER, (
        'mine_nearest_ore', 'chop_nearest_tree', 'collect_nearest_item',
        'mine_stone', 'search_for_resources', 'gather_food', 'fish',
        'farm_crops', 'mine_deep', 'surface_explore')),
    (ActionCategory.COMBAT, (
        'fight_zombie', 'fight_skeleton', 'fight_creeper', 'defend_position',
        'retreat')),
    (ActionCategory.CRAFT, (
        'craft_tools', 'craft_weapons', 'smelt_ores', 'build_structure',
        'place_torch')),
    (ActionCategory.SOCIAL, (
        'find_agent', 'trade_with_agent', 'follow_agent', 'share_resources',
        'request_help', 'gather_near_agents', 'coordinate_mining',
        'build_together', 'defend_ally', 'celebrate_achievement')),
    (ActionCategory.BUILDING, (
        'place_crafting_table', 'place_furnace', 'place_chest', 'build_wall',
        'build_floor', 'light_area', 'create_path', 'build_shelter_structure',
        'claim_territory', 'improve_infrastructure')),
    (ActionCategory.UTILITY, (
        'idle', 'go_to_surface', 'go_underground', 'find_shelter',
        'return_to_village', 'rest_and_observe', 'seek_adventure',
        'pursue_achievement', 'satisfy_needs', 'express_mood')),
]


def _build_specs() -> Tuple[ActionSpec, ...]:
    specs = []
    for category, names in _CATALOG_LAYOUT:
        for name in names:
            specs.append(ActionSpec(len(specs), name, category))
    return tuple(specs)


ACTIONS: Tuple[ActionSpec, ...] = _build_specs()
ACTION_COUNT = len(ACTIONS)  # 70

# Action groups consulted by the reward function and goals
BUILDING_ACTIONS: FrozenSet[str] = frozenset({
    'place_block', 'build_structure', 'place_crafting_table', 'place_furnace',
    'place_chest', 'build_wall', 'build_floor', 'build_shelter_structure',
    'build_together',
})
MINING_ACTIONS: FrozenSet[str] = frozenset({
    'dig_forward', 'dig_down', 'dig_up', 'mine_nearest_ore', 'mine_stone',
    'mine_deep', 'coordinate_mining',
})
COMBAT_ACTIONS: FrozenSet[str] = frozenset({
    'attack_nearest', 'fight_zombie', 'fight_skeleton', 'fight_creeper',
    'defend_position', 'defend_ally',
})
CREATIVE_ACTIONS: FrozenSet[str] = frozenset({
    'place_block', 'build_structure', 'craft_tools', 'craft_weapons',
    'build_wall', 'build_floor', 'build_shelter_structure',
    'place_crafting_table', 'place_furnace',
})

# Which skill gains XP when an action is performed
SKILL_FOR_ACTION: Dict[str, str] = {
    'attack_nearest': 'hand_to_hand',
    'fight_zombie': 'sword_fighting',
    'fight_skeleton': 'archery',
    'fight_creeper': 'sword_fighting',
    'defend_ally': 'critical_strike',
    'defend_position': 'critical_strike',
    'fish': 'fishing',
    'gather_food': 'foraging',
    'farm_crops': 'farming',
    'eat_food': 'cooking',
    'mine_nearest_ore': 'mining',
    'mine_stone': 'mining',
    'mine_deep': 'mining',
    'dig_forward': 'mining',
    'chop_nearest_tree': 'woodcutting',
    'build_structure': 'carpentry',
    'place_block': 'carpentry',
    'build_wall': 'carpentry',
    'craft_tools': 'smithing',
    'craft_weapons': 'smithing',
    'smelt_ores': 'smithing',
    'improve_infrastructure': 'engineering',
    'sprint': 'sprinting',
    'sneak': 'sneaking',
    'jump': 'nimble',
    'random_walk': 'fitness',
}


class Actuator(Protocol):
    """
    Performs one named action in the world and blocks until it finishes.

    Implementations report failure by returning False; they must not let
    exceptions escape.
    """

    def execute(self, action_name: str) -> bool:
        ...


class ActionCatalog:
    """Stable bidirectional index <-> name mapping over ACTIONS."""

    def __init__(self, actions: Tuple[ActionSpec, ...] = ACTIONS):
        self._actions = actions
        self._index: Dict[str, int] = {a.name: a.index for a in actions}
        if len(self._index) != len(actions):
            raise ValueError("duplicate action names in catalog")

    def count(self) -> int:
        return len(self._actions)

    def __len__(self) -> int:
        return len(self._actions)

    def name_of(self, index: int) -> str:
        if not 0 <= index < len(self._actions):
            return 'unknown'
        return self._actions[index].name

    def index_of(self, name: str) -> int:
        return self._index[name]

    def find(self, name: str) -> Optional[int]:
        return self._index.get(name)

    def category_of(self, index: int) -> Optional[ActionCategory]:
        if not 0 <= index < len(self._actions):
            return None
        return self._actions[index].category

    def names(self) -> List[str]:
        return [a.name for a in self._actions]

    def by_category(self, category: ActionCategory) -> List[ActionSpec]:
        return [a for a in self._actions if a.category == category]

    def execute(self, index: int, actuator: Actuator) -> bool:
        """Run action ``index`` through ``actuator``; returns success."""
        if not 0 <= index < len(self._actions):
            logger.warning(f"Invalid action index: {index}")
            return False

        name = self._actions[index].name
        try:
            return bool(actuator.execute(name))
        except Exception as e:
            # The actuator contract says it never raises; contain violations here
            logger.error(f"Actuator raised while executing {name}: {e}")
            return False

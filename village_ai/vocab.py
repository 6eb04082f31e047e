"""
Fixed vocabularies shared by the encoders.

Order matters: every index here is baked into trained network weights, so
entries may only ever be appended.
"""

BLOCK_VOCAB = (
    'air', 'stone', 'grass_block', 'dirt', 'cobblestone', 'oak_log', 'oak_planks',
    'coal_ore', 'iron_ore', 'diamond_ore', 'gold_ore', 'water', 'lava', 'sand',
    'gravel', 'oak_leaves', 'glass', 'chest', 'crafting_table', 'furnace',
    'wheat', 'oak_sapling', 'bedrock', 'obsidian', 'torch', 'deepslate',
    'deepslate_iron_ore', 'deepslate_diamond_ore', 'ancient_debris', 'netherrack',
)

ITEM_VOCAB = (
    'wooden_pickaxe', 'stone_pickaxe', 'iron_pickaxe', 'diamond_pickaxe',
    'wooden_axe', 'stone_axe', 'iron_axe', 'diamond_axe',
    'wooden_sword', 'stone_sword', 'iron_sword', 'diamond_sword',
    'bow', 'arrow', 'shield', 'iron_helmet', 'iron_chestplate', 'iron_leggings', 'iron_boots',
    'coal', 'iron_ingot', 'diamond', 'gold_ingot', 'stick',
    'cobblestone', 'stone', 'dirt', 'oak_log', 'oak_planks',
    'bread', 'cooked_beef', 'apple', 'crafting_table', 'furnace', 'torch',
    'iron_ore', 'coal_ore', 'diamond_ore', 'wheat_seeds', 'wheat',
)

ENTITY_TYPES = (
    'player', 'zombie', 'skeleton', 'spider', 'creeper', 'enderman',
    'cow', 'pig', 'sheep', 'chicken', 'wolf', 'villager', 'iron_golem',
    'arrow', 'item', 'experience_orb',
)

HOSTILE_MOBS = frozenset({'zombie', 'skeleton', 'spider', 'creeper', 'enderman'})

AGENT_ROLES = (
    'MINING', 'LUMBERJACK', 'HUNTING', 'EXPLORING', 'FARMING',
    'BLACKSMITH', 'GUARD', 'BUILDER', 'TRADING', 'FISHING', 'KNIGHT', 'SCOUT',
)

GOAL_KEYS = (
    'EXPLORE', 'GATHER_RESOURCES', 'BUILD_SHELTER', 'SOCIALIZE',
    'DEFEND', 'REST', 'CRAFT_TOOLS',
)

VALUABLE_BLOCKS = frozenset({
    'coal_ore', 'iron_ore', 'diamond_ore', 'gold_ore',
    'oak_log', 'birch_log', 'spruce_log', 'chest',
})

SHARED_STRUCTURES = frozenset({
    'crafting_table', 'furnace', 'chest', 'anvil', 'enchanting_table',
})

ACHIEVEMENT_FLAGS = (
    'diamonds', 'iron_armor', 'enchanting_table', 'nether_portal',
    'elytra', 'beaten_wither', 'beaten_dragon', 'beacon',
)

ACHIEVEMENT_ITEMS = (
    'diamond', 'iron_ingot', 'obsidian', 'ender_pearl', 'blaze_powder', 'nether_star',
)

SKILL_ORDER = (
    # Combat
    'axe_fighting', 'sword_fighting', 'hand_to_hand', 'archery', 'critical_strike',
    # Survival
    'fishing', 'foraging', 'trapping', 'farming', 'cooking',
    # Crafting
    'mining', 'woodcutting', 'carpentry', 'smithing', 'engineering',
    # Physical
    'sprinting', 'sneaking', 'nimble', 'strength', 'fitness',
)

MOODLE_ORDER = (
    # Physical
    'hungry', 'thirsty', 'tired', 'injured', 'sick', 'bleeding', 'poisoned',
    # Mental
    'panicked', 'stressed', 'anxious', 'depressed',
    # Environmental
    'cold', 'hot', 'wet',
)

MEMORY_KINDS = {
    'achievement': 1,
    'danger': 2,
    'social': 3,
    'discovery': 4,
    'death': 5,
    'birth': 6,
}

RELATIONSHIP_KINDS = {
    'hostile': 0.0,
    'neutral': 0.33,
    'ally': 0.66,
    'friend': 1.0,
}

EFFECT_ORDER = (
    'speed', 'slowness', 'haste', 'mining_fatigue', 'strength',
    'regeneration', 'resistance', 'poison', 'weakness', 'night_vision',
)

EQUIPMENT_SLOTS = ('head', 'chest', 'legs', 'feet', 'hand')
EQUIPMENT_MATERIALS = ('leather', 'iron', 'diamond')

ORE_TYPES = (
    'coal_ore', 'iron_ore', 'gold_ore', 'diamond_ore', 'lapis_ore',
    'redstone_ore', 'emerald_ore', 'copper_ore', 'ancient_debris', 'nether_quartz_ore',
)
BUILDING_MATERIALS = ('oak_log', 'cobblestone', 'dirt', 'sand', 'gravel')
DANGER_BLOCKS = (('lava', 5.0), ('water', 20.0), ('cactus', 5.0), ('fire', 3.0), ('tnt', 2.0))
STRUCTURAL_BLOCKS = (
    'chest', 'crafting_table', 'furnace', 'anvil', 'enchanting_table',
    'brewing_stand', 'beacon', 'hopper', 'dispenser', 'dropper',
)
AGRICULTURAL_BLOCKS = ('wheat', 'carrots', 'potatoes', 'farmland', 'hay_block')
SENSOR_HOSTILES = ('zombie', 'skeleton', 'spider', 'creeper', 'enderman')
PASSIVE_MOBS = ('cow', 'pig', 'sheep', 'chicken', 'horse')
VALUABLE_ITEMS = (
    'diamond', 'emerald', 'iron_ingot', 'gold_ingot', 'netherite_scrap',
    'enchanted_book', 'golden_apple', 'ender_pearl', 'blaze_rod', 'totem_of_undying',
)
FOOD_ITEMS = ('bread', 'cooked_beef', 'apple', 'carrot', 'potato', 'cooked_chicken', 'cooked_porkchop')

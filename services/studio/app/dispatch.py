"""Keyword routing from a user's latest message to a game builder profile."""

from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple


@dataclass(frozen=True)
class AgentProfile:
    name: str
    game_type: Optional[str] = None
    game_loop: Optional[str] = None
    focus_mechanics: Tuple[str, ...] = ()
    include_implementation_patterns: bool = False
    include_engagement_patterns: bool = False
    include_prototyping_tips: bool = False
    custom_instructions: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["focus_mechanics"] = list(self.focus_mechanics)
        return d


GENERIC = AgentProfile(
    name="builder",
    include_implementation_patterns=True,
    include_engagement_patterns=True,
    include_prototyping_tips=True,
)

SPACE_SHOOTER = AgentProfile(
    name="space-shooter",
    game_type="action",
    game_loop="shootAndDestroy",
    focus_mechanics=("projectileSystems", "powerUpSystems", "difficultyScaling"),
    include_implementation_patterns=True,
    custom_instructions=(
        "Focus on tight controls, satisfying shooting feedback and escalating enemy waves. "
        "Use Phaser's arcade physics for projectiles and collisions."
    ),
)

PLATFORMER = AgentProfile(
    name="platformer",
    game_type="platformer",
    game_loop="jumpAndRun",
    focus_mechanics=("movementSystems", "collectibleSystems", "levelProgression"),
    include_implementation_patterns=True,
    custom_instructions=(
        "Prioritize responsive jumping with coyote time and jump buffering. "
        "Design levels that teach mechanics before testing them."
    ),
)

PUZZLE = AgentProfile(
    name="puzzle",
    game_type="puzzle",
    focus_mechanics=("gridSystems", "matchingMechanics", "scoreSystems"),
    include_engagement_patterns=True,
    custom_instructions=(
        "Keep rules easy to grasp and make every move give clear visual feedback. "
        "Add a gentle difficulty ramp and a way to retry quickly."
    ),
)

SURVIVAL = AgentProfile(
    name="survival",
    game_type="action",
    game_loop="collectAndAvoid",
    focus_mechanics=("healthSystems", "spawnSystems", "difficultyScaling"),
    include_engagement_patterns=True,
    custom_instructions=(
        "Build tension through gradually increasing hazards. "
        "Telegraph danger before it hits and reward near misses."
    ),
)

TOWER_DEFENSE = AgentProfile(
    name="tower-defense",
    game_type="strategy",
    game_loop="buildAndManage",
    focus_mechanics=("resourceSystems", "pathfinding", "waveSystems"),
    include_implementation_patterns=True,
    custom_instructions=(
        "Give every tower a distinct role and make enemy paths readable. "
        "Balance the economy so early choices matter."
    ),
)

ENDLESS_RUNNER = AgentProfile(
    name="endless-runner",
    game_type="arcade",
    game_loop="jumpAndRun",
    focus_mechanics=("proceduralGeneration", "difficultyScaling", "scoreSystems"),
    include_prototyping_tips=True,
    custom_instructions=(
        "Generate obstacles procedurally with a fair, steadily rising speed. "
        "Make restarts instant and show the best score."
    ),
)


def _mentions(*keywords: str) -> Callable[[str], bool]:
    def match(text: str) -> bool:
        return any(k in text for k in keywords)
    match.keywords = keywords  # type: ignore[attr-defined]
    return match


# Evaluated in order; the first matching rule wins
AGENT_RULES: Tuple[Tuple[Callable[[str], bool], AgentProfile], ...] = (
    (_mentions("space", "shoot", "alien", "invader"), SPACE_SHOOTER),
    (_mentions("jump", "platform", "mario", "sonic"), PLATFORMER),
    (_mentions("puzzle", "match", "tetris", "solve"), PUZZLE),
    (_mentions("survive", "avoid", "dodge", "snake"), SURVIVAL),
    (_mentions("tower", "defense", "strategy", "protect"), TOWER_DEFENSE),
    (_mentions("run", "endless", "temple run", "subway"), ENDLESS_RUNNER),
)


def select_agent(text: Optional[str]) -> AgentProfile:
    """
    Pick the builder profile for a message. Matching is case-insensitive substring
    search over each rule's keywords, so "running" counts as "run". Never raises.
    """
    if not text:
        return GENERIC
    lowered = text.lower()
    for matches, profile in AGENT_RULES:
        if matches(lowered):
            return profile
    return GENERIC


def all_profiles() -> List[AgentProfile]:
    return [GENERIC, *(profile for _, profile in AGENT_RULES)]


def rule_catalog() -> List[Dict[str, Any]]:
    out = []
    for order, (matches, profile) in enumerate(AGENT_RULES, start=1):
        out.append({"order": order, "keywords": list(getattr(matches, "keywords", ())), "agent": profile.name})
    return out


def latest_user_text(messages: Sequence[Dict[str, Any]]) -> str:
    """Join the string text parts of the last message with newlines; anything else is ignored."""
    if not messages:
        return ""
    parts: Iterable[Dict[str, Any]] = messages[-1].get("parts") or []
    return "\n".join(p["text"] for p in parts if p.get("type") == "text" and isinstance(p.get("text"), str))

"""
Bracket Template Builder: static match graph for elimination brackets.

build_template(team_count, bracket_type) returns a BracketTemplate: an arena of
TemplateNodes keyed by a stable template_key, linked by winner and loser
advancement edges. The template carries no live data (teams, scores); Match
rows mirror it 1:1 via template_key.

Key scheme:
    W{r}-M{m}   winners bracket round r, match m
    L{r}-M{m}   losers bracket round r, match m (double elimination)
    F-M1        final (single elimination last round, or WB champion vs LB champion)
    TP-M1       third-place match (single elimination, optional)
    GF-M1       grand-final reset (double elimination, materialized on demand)

Determinism: identical inputs always produce an identical template.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from intramurals.models.match import BracketStage
from intramurals.models.tournament import BracketType
from intramurals.services.bracket_errors import BracketNotBuilt, InvalidTeamCount, InvalidTemplate

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

FINAL_KEY = "F-M1"
THIRD_PLACE_KEY = "TP-M1"
GRAND_FINAL_KEY = "GF-M1"

# Match.round = stage offset + stage_round (double elimination)
STAGE_ROUND_OFFSETS = {
    BracketStage.winners.value: 0,
    BracketStage.losers.value: 100,
    BracketStage.final.value: 200,
    BracketStage.grand_final.value: 300,
}

ROLE_WINNER = "winner"
ROLE_LOSER = "loser"

TERMINAL_STAGES = (BracketStage.final.value, BracketStage.grand_final.value)


# -----------------------------------------------------------------------------
# Slot sources
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Seed:
    number: int

    def label(self) -> str:
        return f"Seed {self.number}"


@dataclass(frozen=True)
class WinnerOf:
    template_key: str

    def label(self) -> str:
        return f"Winner of {self.template_key}"


@dataclass(frozen=True)
class LoserOf:
    template_key: str

    def label(self) -> str:
        return f"Loser of {self.template_key}"


@dataclass(frozen=True)
class Bye:
    def label(self) -> str:
        return "BYE"


SlotSource = Union[Seed, WinnerOf, LoserOf, Bye]


def slot_to_dict(slot: SlotSource) -> Dict[str, Any]:
    if isinstance(slot, Seed):
        return {"kind": "seed", "seed": slot.number}
    if isinstance(slot, WinnerOf):
        return {"kind": "winner_of", "template_key": slot.template_key}
    if isinstance(slot, LoserOf):
        return {"kind": "loser_of", "template_key": slot.template_key}
    return {"kind": "bye"}


def slot_from_dict(data: Dict[str, Any]) -> SlotSource:
    kind = data.get("kind")
    if kind == "seed":
        return Seed(int(data["seed"]))
    if kind == "winner_of":
        return WinnerOf(data["template_key"])
    if kind == "loser_of":
        return LoserOf(data["template_key"])
    if kind == "bye":
        return Bye()
    raise InvalidTemplate(f"Unknown slot kind: {kind!r}")


# -----------------------------------------------------------------------------
# Template graph
# -----------------------------------------------------------------------------


@dataclass
class TemplateNode:
    template_key: str
    bracket_stage: str
    stage_round: int
    match_number: int
    round: int
    team1_slot: SlotSource
    team2_slot: SlotSource
    display_label: str
    next_template_key: Optional[str] = None
    next_match_position: Optional[int] = None
    loser_next_template_key: Optional[str] = None
    loser_next_match_position: Optional[int] = None
    is_bye: bool = False
    is_third_place: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.next_template_key is None

    def slot(self, position: int) -> SlotSource:
        return self.team1_slot if position == 1 else self.team2_slot

    def to_dict(self) -> Dict[str, Any]:
        return {
            "template_key": self.template_key,
            "bracket_stage": self.bracket_stage,
            "stage_round": self.stage_round,
            "match_number": self.match_number,
            "round": self.round,
            "team1_slot": slot_to_dict(self.team1_slot),
            "team2_slot": slot_to_dict(self.team2_slot),
            "display_label": self.display_label,
            "next_template_key": self.next_template_key,
            "next_match_position": self.next_match_position,
            "loser_next_template_key": self.loser_next_template_key,
            "loser_next_match_position": self.loser_next_match_position,
            "is_bye": self.is_bye,
            "is_third_place": self.is_third_place,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemplateNode":
        return cls(
            template_key=data["template_key"],
            bracket_stage=data["bracket_stage"],
            stage_round=int(data["stage_round"]),
            match_number=int(data["match_number"]),
            round=int(data["round"]),
            team1_slot=slot_from_dict(data["team1_slot"]),
            team2_slot=slot_from_dict(data["team2_slot"]),
            display_label=data.get("display_label") or data["template_key"],
            next_template_key=data.get("next_template_key"),
            next_match_position=data.get("next_match_position"),
            loser_next_template_key=data.get("loser_next_template_key"),
            loser_next_match_position=data.get("loser_next_match_position"),
            is_bye=bool(data.get("is_bye", False)),
            is_third_place=bool(data.get("is_third_place", False)),
        )


@dataclass
class BracketTemplate:
    """Static bracket graph: nodes keyed by template_key, in build order."""

    bracket_type: str
    team_count: int
    bracket_size: int
    nodes: Dict[str, TemplateNode] = field(default_factory=dict)
    third_place_match: bool = False
    grand_final_reset: bool = False

    @property
    def winners_rounds(self) -> int:
        return int(math.log2(self.bracket_size)) if self.bracket_size >= 2 else 0

    @property
    def is_double_elimination(self) -> bool:
        return self.bracket_type == BracketType.double_elimination.value

    def node(self, template_key: str) -> TemplateNode:
        return self.nodes[template_key]

    def stage_nodes(self, stage: str) -> List[TemplateNode]:
        """Nodes of one stage ordered by (stage_round, match_number)."""
        return sorted(
            (n for n in self.nodes.values() if n.bracket_stage == stage),
            key=lambda n: (n.stage_round, n.match_number),
        )

    def round_one_nodes(self) -> List[TemplateNode]:
        """Nodes that take seeds directly (round 1 of the winners tree)."""
        return [
            n for n in self.nodes.values()
            if isinstance(n.team1_slot, Seed) or isinstance(n.team2_slot, Seed)
        ]

    def terminal_nodes(self) -> List[TemplateNode]:
        return [n for n in self.nodes.values() if n.is_terminal]

    def decisive_count(self) -> int:
        """Matches that need a result: not a bye, not the third-place playoff."""
        return sum(1 for n in self.nodes.values() if not n.is_bye and not n.is_third_place)

    def reset_node(self) -> Optional[TemplateNode]:
        """
        Grand-final reset node, built on demand.

        Not part of `nodes`: the reset match only exists once the losers-bracket
        champion has won the final. Returns None when the template has no reset.
        """
        if not (self.is_double_elimination and self.grand_final_reset):
            return None
        stage = BracketStage.grand_final.value
        return TemplateNode(
            template_key=GRAND_FINAL_KEY,
            bracket_stage=stage,
            stage_round=1,
            match_number=1,
            round=STAGE_ROUND_OFFSETS[stage] + 1,
            team1_slot=WinnerOf(FINAL_KEY),
            team2_slot=LoserOf(FINAL_KEY),
            display_label="Grand Final",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bracket_type": self.bracket_type,
            "team_count": self.team_count,
            "bracket_size": self.bracket_size,
            "third_place_match": self.third_place_match,
            "grand_final_reset": self.grand_final_reset,
            "nodes": [n.to_dict() for n in self.nodes.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BracketTemplate":
        template = cls(
            bracket_type=data["bracket_type"],
            team_count=int(data["team_count"]),
            bracket_size=int(data["bracket_size"]),
            third_place_match=bool(data.get("third_place_match", False)),
            grand_final_reset=bool(data.get("grand_final_reset", False)),
        )
        for raw in data.get("nodes", []):
            node = TemplateNode.from_dict(raw)
            template.nodes[node.template_key] = node
        validate_template(template)
        return template


def load_template(tournament: Any) -> BracketTemplate:
    """Deserialize the template stored on a tournament row."""
    data = getattr(tournament, "bracket_template", None)
    if not data:
        raise BracketNotBuilt(f"Tournament {getattr(tournament, 'id', None)} has no bracket template")
    return BracketTemplate.from_dict(data)


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------


def validate_template(template: BracketTemplate) -> None:
    """
    Check the structural invariants of a template graph.

    Raises InvalidTemplate when:
    - an edge points at a missing node, or a target slot does not name its source
    - two edges feed the same (target, position)
    - (stage, stage_round, match_number) is not unique
    - a node without a successor is outside the final/grand_final stages
    - a loser edge leaves a non-winners node
    - the graph has a cycle
    """
    nodes = template.nodes
    seen_numbers = set()
    consumed = set()

    for key, node in nodes.items():
        if key != node.template_key:
            raise InvalidTemplate(f"Node stored under {key!r} has key {node.template_key!r}")

        number_key = (node.bracket_stage, node.stage_round, node.match_number)
        if number_key in seen_numbers:
            raise InvalidTemplate(f"Duplicate match number {number_key}")
        seen_numbers.add(number_key)

        if node.is_terminal and node.bracket_stage not in TERMINAL_STAGES:
            raise InvalidTemplate(f"{key}: non-final node has no next_template_key")

        edges = [
            (node.next_template_key, node.next_match_position, WinnerOf(key)),
            (node.loser_next_template_key, node.loser_next_match_position, LoserOf(key)),
        ]
        for target_key, position, expected_slot in edges:
            if target_key is None:
                continue
            if isinstance(expected_slot, LoserOf) and node.bracket_stage != BracketStage.winners.value:
                raise InvalidTemplate(f"{key}: loser edge from {node.bracket_stage} node")
            target = nodes.get(target_key)
            if target is None:
                raise InvalidTemplate(f"{key}: edge to missing node {target_key!r}")
            if position not in (1, 2):
                raise InvalidTemplate(f"{key}: invalid position {position!r}")
            if (target_key, position) in consumed:
                raise InvalidTemplate(f"{target_key}: slot {position} fed twice")
            consumed.add((target_key, position))
            if target.slot(position) != expected_slot:
                raise InvalidTemplate(f"{target_key}: slot {position} does not name {expected_slot.label()}")

    _check_acyclic(template)


def _check_acyclic(template: BracketTemplate) -> None:
    indegree: Dict[str, int] = {key: 0 for key in template.nodes}
    children: Dict[str, List[str]] = defaultdict(list)
    for node in template.nodes.values():
        for target in (node.next_template_key, node.loser_next_template_key):
            if target is not None:
                children[node.template_key].append(target)
                indegree[target] += 1

    queue = deque(key for key, deg in indegree.items() if deg == 0)
    visited = 0
    while queue:
        key = queue.popleft()
        visited += 1
        for child in children[key]:
            indegree[child] -= 1
            if indegree[child] == 0:
                queue.append(child)

    if visited != len(template.nodes):
        raise InvalidTemplate("Bracket graph contains a cycle")


# -----------------------------------------------------------------------------
# Seeding helpers
# -----------------------------------------------------------------------------


def calculate_bracket_size(team_count: int) -> int:
    """Smallest power of two >= team_count."""
    if team_count < 2:
        return 0
    return 2 ** math.ceil(math.log2(team_count))


def bracket_order(bracket_size: int) -> List[int]:
    """
    Standard seed order for round 1.

    For 8 slots: [1, 8, 4, 5, 2, 7, 3, 6] -> 1v8, 4v5, 2v7, 3v6.
    If the higher seeds keep winning, seed 1 meets seed 2 in the final.
    Seeds above team_count are byes, so the top seeds receive them.
    """
    if bracket_size <= 2:
        return [1, 2][:bracket_size]

    upper = bracket_order(bracket_size // 2)
    lower = [bracket_size + 1 - seed for seed in upper]

    order: List[int] = []
    for u, l in zip(upper, lower):
        order.extend([u, l])
    return order


# -----------------------------------------------------------------------------
# Builder
# -----------------------------------------------------------------------------


class _TemplateBuilder:
    def __init__(self, template: BracketTemplate):
        self.template = template
        self.single = template.bracket_type == BracketType.single_elimination.value

    def add(self, node: TemplateNode) -> str:
        self.template.nodes[node.template_key] = node
        return node.template_key

    def link(self, source_key: str, role: str, target_key: str, position: int) -> None:
        source = self.template.nodes[source_key]
        if role == ROLE_WINNER:
            source.next_template_key = target_key
            source.next_match_position = position
        else:
            source.loser_next_template_key = target_key
            source.loser_next_match_position = position

    def produces(self, source_key: Optional[str], role: str) -> bool:
        """Whether a feeder can ever deliver a team (byes have no loser)."""
        if source_key is None:
            return False
        if role == ROLE_LOSER:
            return not self.template.nodes[source_key].is_bye
        return True

    # -- winners tree ---------------------------------------------------------

    def build_winners(self) -> Dict[int, List[str]]:
        """Build the winners tree; returns keys per round (index = match_number - 1)."""
        size = self.template.bracket_size
        team_count = self.template.team_count
        rounds = self.template.winners_rounds
        order = bracket_order(size)
        by_round: Dict[int, List[str]] = {}

        for r in range(1, rounds + 1):
            keys: List[str] = []
            for m in range(1, size // 2 ** r + 1):
                if r == 1:
                    s1, s2 = order[2 * m - 2], order[2 * m - 1]
                    slot1: SlotSource = Seed(s1) if s1 <= team_count else Bye()
                    slot2: SlotSource = Seed(s2) if s2 <= team_count else Bye()
                else:
                    slot1 = WinnerOf(by_round[r - 1][2 * m - 2])
                    slot2 = WinnerOf(by_round[r - 1][2 * m - 1])

                is_final = self.single and r == rounds
                if is_final:
                    node = TemplateNode(
                        template_key=FINAL_KEY,
                        bracket_stage=BracketStage.final.value,
                        stage_round=1,
                        match_number=1,
                        round=r,
                        team1_slot=slot1,
                        team2_slot=slot2,
                        display_label="Final",
                    )
                else:
                    label = f"Round {r} - Match {m}" if self.single else f"Winners Round {r} - Match {m}"
                    node = TemplateNode(
                        template_key=f"W{r}-M{m}",
                        bracket_stage=BracketStage.winners.value,
                        stage_round=r,
                        match_number=m,
                        round=STAGE_ROUND_OFFSETS[BracketStage.winners.value] + r,
                        team1_slot=slot1,
                        team2_slot=slot2,
                        display_label=label,
                        is_bye=isinstance(slot1, Bye) or isinstance(slot2, Bye),
                    )
                keys.append(self.add(node))

                if r > 1:
                    self.link(by_round[r - 1][2 * m - 2], ROLE_WINNER, node.template_key, 1)
                    self.link(by_round[r - 1][2 * m - 1], ROLE_WINNER, node.template_key, 2)
            by_round[r] = keys
        return by_round

    def build_third_place(self, winners: Dict[int, List[str]]) -> None:
        rounds = self.template.winners_rounds
        if rounds < 2:
            return
        semis = winners[rounds - 1]
        if any(self.template.nodes[key].is_bye for key in semis):
            # a bye semifinal produces no loser to play for third
            return
        node = TemplateNode(
            template_key=THIRD_PLACE_KEY,
            bracket_stage=BracketStage.final.value,
            stage_round=1,
            match_number=2,
            round=rounds,
            team1_slot=LoserOf(semis[0]),
            team2_slot=LoserOf(semis[1]),
            display_label="Third Place Match",
            is_third_place=True,
        )
        self.add(node)
        self.link(semis[0], ROLE_LOSER, THIRD_PLACE_KEY, 1)
        self.link(semis[1], ROLE_LOSER, THIRD_PLACE_KEY, 2)

    # -- losers bracket -------------------------------------------------------

    def losers_node(self, stage_round: int, match_number: int, feeders: List[Tuple[Optional[str], str]]) -> Optional[str]:
        """
        Create a losers-bracket node from its two feeders, or None when neither
        feeder can deliver a team. One live feeder makes it a bye node.
        """
        live = [self.produces(src, role) for src, role in feeders]
        if not any(live):
            return None

        slots: List[SlotSource] = []
        for (src, role), is_live in zip(feeders, live):
            if not is_live:
                slots.append(Bye())
            elif role == ROLE_WINNER:
                slots.append(WinnerOf(src))
            else:
                slots.append(LoserOf(src))

        stage = BracketStage.losers.value
        key = self.add(TemplateNode(
            template_key=f"L{stage_round}-M{match_number}",
            bracket_stage=stage,
            stage_round=stage_round,
            match_number=match_number,
            round=STAGE_ROUND_OFFSETS[stage] + stage_round,
            team1_slot=slots[0],
            team2_slot=slots[1],
            display_label=f"Losers Round {stage_round} - Match {match_number}",
            is_bye=not all(live),
        ))
        for position, ((src, role), is_live) in enumerate(zip(feeders, live), start=1):
            if is_live:
                self.link(src, role, key, position)
        return key

    def build_losers(self, winners: Dict[int, List[str]]) -> Tuple[str, str]:
        """
        Build the losers bracket ("losers drop down").

        Round-1 winners losers pair off in L1. Losers of winners round k >= 2
        drop into L(2k-2) against L(2k-3) winners; minor rounds L(2k-1) pair
        the previous losers winners. Returns (source_key, role) feeding the
        final's second slot.
        """
        rounds = self.template.winners_rounds
        if rounds == 1:
            return winners[1][0], ROLE_LOSER

        first = winners[1]
        previous: List[Optional[str]] = [
            self.losers_node(1, i + 1, [(first[2 * i], ROLE_LOSER), (first[2 * i + 1], ROLE_LOSER)])
            for i in range(len(first) // 2)
        ]
        losers_round = 1

        for k in range(2, rounds + 1):
            losers_round += 1
            drop_ins = winners[k]
            previous = [
                self.losers_node(losers_round, i + 1, [(drop_ins[i], ROLE_LOSER), (previous[i], ROLE_WINNER)])
                for i in range(len(drop_ins))
            ]
            if k < rounds:
                losers_round += 1
                previous = [
                    self.losers_node(
                        losers_round, i + 1, [(previous[2 * i], ROLE_WINNER), (previous[2 * i + 1], ROLE_WINNER)]
                    )
                    for i in range(len(previous) // 2)
                ]

        champion = previous[0]
        if champion is None:
            raise InvalidTemplate("Losers bracket produced no champion")
        return champion, ROLE_WINNER

    def build_final(self, winners: Dict[int, List[str]], losers_source: Tuple[str, str]) -> None:
        rounds = self.template.winners_rounds
        winners_champion = winners[rounds][0]
        losers_key, losers_role = losers_source
        stage = BracketStage.final.value
        self.add(TemplateNode(
            template_key=FINAL_KEY,
            bracket_stage=stage,
            stage_round=1,
            match_number=1,
            round=STAGE_ROUND_OFFSETS[stage] + 1,
            team1_slot=WinnerOf(winners_champion),
            team2_slot=LoserOf(losers_key) if losers_role == ROLE_LOSER else WinnerOf(losers_key),
            display_label="Final",
        ))
        self.link(winners_champion, ROLE_WINNER, FINAL_KEY, 1)
        self.link(losers_key, losers_role, FINAL_KEY, 2)


def build_template(
    team_count: int,
    bracket_type: Union[BracketType, str],
    *,
    third_place_match: bool = False,
    grand_final_reset: bool = True,
) -> BracketTemplate:
    """
    Build the static bracket graph for team_count teams.

    Args:
        team_count: Number of teams (>= 2)
        bracket_type: single_elimination or double_elimination
        third_place_match: Single elimination only; append a playoff fed by the
            two semifinal losers (skipped when a semifinal is a bye)
        grand_final_reset: Double elimination only; allow a reset match when the
            losers-bracket champion wins the final

    Returns:
        BracketTemplate

    Raises:
        InvalidTeamCount: team_count < 2 or unknown bracket type
    """
    if team_count < 2:
        raise InvalidTeamCount(f"A bracket needs at least 2 teams, got {team_count}")
    try:
        kind = BracketType(bracket_type)
    except ValueError:
        raise InvalidTeamCount(f"Unsupported bracket type: {bracket_type!r}")

    single = kind == BracketType.single_elimination
    template = BracketTemplate(
        bracket_type=kind.value,
        team_count=team_count,
        bracket_size=calculate_bracket_size(team_count),
        third_place_match=single and third_place_match,
        grand_final_reset=(not single) and grand_final_reset,
    )
    builder = _TemplateBuilder(template)
    winners = builder.build_winners()

    if single:
        if template.third_place_match:
            builder.build_third_place(winners)
    else:
        losers_source = builder.build_losers(winners)
        builder.build_final(winners, losers_source)

    validate_template(template)
    logger.info(
        "Built %s template: %d teams, bracket size %d, %d nodes (%d decisive)",
        template.bracket_type,
        team_count,
        template.bracket_size,
        len(template.nodes),
        template.decisive_count(),
    )
    return template

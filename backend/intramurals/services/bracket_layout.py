"""
Bracket Layout Projector: template graph + live matches -> drawable coordinates.

Pure: no mutation, no I/O; called on every bracket read.

Geometry (all units in px, y is the vertical center of a node):
- Winners grid: column r (0-based) at x = r * column_width, spacing base * 2^r,
  y = spacing * (2 * index + 1). Doubling keeps each match centered between
  its two feeders. Single elimination has its final as the last column.
- Losers grid: linear spacing base * (r + 1), shifted below the winners grid
  by winners_height + 2.5 * base.
- Finals column (double elimination): right of the winners grid, anchored on
  the last winners match; later finals step right and down.
- Edges: orthogonal H-V-H paths from the source's right edge to the target.

Only nodes holding at least one team (or a bye) are returned; positions are
computed over the whole template first, so nodes never move as results arrive.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from intramurals.models.match import BracketStage, Match
from intramurals.services.bracket_template import (
    FINAL_KEY,
    GRAND_FINAL_KEY,
    THIRD_PLACE_KEY,
    BracketTemplate,
    TemplateNode,
)

EDGE_WINNER = "winner"
EDGE_LOSER = "loser"
EDGE_GRAND_FINAL = "grand_final"

LOSERS_GAP_FACTOR = 2.5
FINALS_STEP_FACTOR = 1.35


@dataclass(frozen=True)
class LayoutConfig:
    column_width: float = 250
    match_width: float = 180
    match_height: float = 120
    base_spacing: float = 72


@dataclass
class NodePosition:
    template_key: str
    x: float
    y: float
    bracket_stage: str
    stage_round: int
    display_label: str
    match_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "template_key": self.template_key,
            "x": self.x,
            "y": self.y,
            "bracket_stage": self.bracket_stage,
            "stage_round": self.stage_round,
            "display_label": self.display_label,
            "match_id": self.match_id,
        }


@dataclass
class LayoutEdge:
    source: str
    target: str
    kind: str
    points: List[Tuple[float, float]] = field(default_factory=list)

    @property
    def svg_path(self) -> str:
        (sx, sy), (mid_x, _), (_, ey), (ex, _) = self.points
        return f"M {sx:g} {sy:g} H {mid_x:g} V {ey:g} H {ex:g}"

    def to_dict(self) -> Dict:
        return {
            "source": self.source,
            "target": self.target,
            "kind": self.kind,
            "points": [list(p) for p in self.points],
            "path": self.svg_path,
        }


@dataclass
class BracketLayout:
    nodes: Dict[str, NodePosition] = field(default_factory=dict)
    edges: List[LayoutEdge] = field(default_factory=list)
    width: float = 0
    height: float = 0

    def to_dict(self) -> Dict:
        return {
            "nodes": {key: node.to_dict() for key, node in self.nodes.items()},
            "edges": [edge.to_dict() for edge in self.edges],
            "width": self.width,
            "height": self.height,
        }


def _layout_grid(
    nodes: List[TemplateNode],
    column_of: Callable[[TemplateNode], int],
    spacing_for: Callable[[int], float],
    offset_y: float,
    config: LayoutConfig,
) -> Dict[str, Tuple[float, float]]:
    positions: Dict[str, Tuple[float, float]] = {}
    for node in nodes:
        column = column_of(node)
        spacing = spacing_for(column)
        index = node.match_number - 1
        positions[node.template_key] = (column * config.column_width, offset_y + spacing * (2 * index + 1))
    return positions


def _extent(positions: Dict[str, Tuple[float, float]], config: LayoutConfig) -> Tuple[float, float]:
    if not positions:
        return 0, 0
    width = max(x for x, _ in positions.values()) + config.match_width
    height = max(y for _, y in positions.values()) + config.match_height
    return width, height


def _edge(source: NodePosition, target: NodePosition, kind: str, config: LayoutConfig) -> LayoutEdge:
    start_x = source.x + config.match_width
    start_y = source.y
    end_x = target.x
    end_y = target.y
    mid_x = start_x + 0.6 * (end_x - start_x)
    return LayoutEdge(
        source=source.template_key,
        target=target.template_key,
        kind=kind,
        points=[(start_x, start_y), (mid_x, start_y), (mid_x, end_y), (end_x, end_y)],
    )


def _is_visible(node: TemplateNode, match: Optional[Match]) -> bool:
    if node.is_bye:
        return True
    if match is None:
        return False
    return match.is_bye or match.team1_id is not None or match.team2_id is not None


def project(
    template: BracketTemplate,
    matches: Iterable[Match],
    config: Optional[LayoutConfig] = None,
) -> BracketLayout:
    """
    Project a bracket onto a 2D canvas.

    Args:
        template: Static bracket graph
        matches: Live match rows (matched to nodes by template_key)
        config: Geometry; defaults to LayoutConfig()

    Returns:
        BracketLayout with visible nodes, edges between visible nodes, and the
        bounding box of the full template
    """
    config = config or LayoutConfig()
    base = config.base_spacing
    match_by_key = {m.template_key: m for m in matches}

    nodes: Dict[str, TemplateNode] = dict(template.nodes)
    reset = template.reset_node()
    if reset is not None and GRAND_FINAL_KEY in match_by_key:
        nodes[GRAND_FINAL_KEY] = reset

    # Winners grid (single elimination: the whole tree including the final)
    if template.is_double_elimination:
        winners_nodes = template.stage_nodes(BracketStage.winners.value)
    else:
        winners_nodes = [n for n in nodes.values() if not n.is_third_place]
    positions = _layout_grid(
        winners_nodes,
        column_of=lambda n: n.round - 1,
        spacing_for=lambda r: base * 2 ** r,
        offset_y=0,
        config=config,
    )
    winners_width, winners_height = _extent(positions, config)

    # Losers grid below the winners grid
    losers_nodes = template.stage_nodes(BracketStage.losers.value)
    positions.update(_layout_grid(
        losers_nodes,
        column_of=lambda n: n.stage_round - 1,
        spacing_for=lambda r: base * (r + 1),
        offset_y=winners_height + LOSERS_GAP_FACTOR * base,
        config=config,
    ))

    if template.is_double_elimination:
        finals = [nodes[key] for key in (FINAL_KEY, GRAND_FINAL_KEY) if key in nodes]
        start_x = winners_width + config.column_width
        anchor = max(winners_nodes, key=lambda n: (n.stage_round, n.match_number), default=None)
        start_y = positions[anchor.template_key][1] if anchor is not None else base * 2
        for i, node in enumerate(finals):
            positions[node.template_key] = (start_x + i * config.column_width, start_y + i * FINALS_STEP_FACTOR * base)
    elif THIRD_PLACE_KEY in nodes and FINAL_KEY in positions:
        final_x, final_y = positions[FINAL_KEY]
        positions[THIRD_PLACE_KEY] = (final_x, final_y + config.match_height + base)

    width, height = _extent(positions, config)
    layout = BracketLayout(width=width, height=height)

    for key, node in nodes.items():
        match = match_by_key.get(key)
        if key not in positions or not _is_visible(node, match):
            continue
        x, y = positions[key]
        layout.nodes[key] = NodePosition(
            template_key=key,
            x=x,
            y=y,
            bracket_stage=node.bracket_stage,
            stage_round=node.stage_round,
            display_label=node.display_label,
            match_id=match.id if match is not None else None,
        )

    for key, node in nodes.items():
        source = layout.nodes.get(key)
        if source is None:
            continue
        targets = [
            (node.next_template_key, EDGE_WINNER),
            (node.loser_next_template_key, EDGE_LOSER),
        ]
        if key == FINAL_KEY and GRAND_FINAL_KEY in nodes:
            targets.append((GRAND_FINAL_KEY, EDGE_GRAND_FINAL))
        for target_key, kind in targets:
            target = layout.nodes.get(target_key) if target_key else None
            if target is not None:
                layout.edges.append(_edge(source, target, kind, config))

    return layout

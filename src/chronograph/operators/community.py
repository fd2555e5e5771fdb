"""Community Detector - label propagation over the entity graph.

Communities are derived state: a member set, a label from the summarizer and
bookkeeping metadata. They can always be rebuilt from the store.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import Counter
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from src.chronograph.errors import CommunityNotFoundError
from src.chronograph.models import Community, CommunityMeta, GraphEdge, GraphNode

# (community, member nodes) -> (label, confidence)
Labeler = Callable[[Community, list[GraphNode]], Awaitable[tuple[str, float]]]


@dataclass
class CommunityConfig:
    """Configuration for community detection."""
    min_size: int = 3
    max_size: int = 50
    min_similarity: float = 0.7        # overlap needed to merge two communities
    max_iterations: int = 10
    convergence_threshold: float = 0.01
    chunk_size: int = 8                # communities labeled concurrently
    default_confidence: float = 0.0
    seed: int | None = None


def build_adjacency(node_ids: Iterable[str], edges: Iterable[GraphEdge]) -> dict[str, set[str]]:
    """Undirected adjacency restricted to ``node_ids``."""
    adjacency: dict[str, set[str]] = {nid: set() for nid in node_ids}
    for edge in edges:
        if edge.source_id == edge.target_id:
            continue
        if edge.source_id in adjacency and edge.target_id in adjacency:
            adjacency[edge.source_id].add(edge.target_id)
            adjacency[edge.target_id].add(edge.source_id)
    return adjacency


class LabelPropagation:
    """Asynchronous label propagation.

    Each node starts labeled with its own id and repeatedly adopts the most
    frequent label among its neighbors. Ties are broken uniformly at random,
    except that a node already holding one of the tied labels keeps it.
    """

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    def initial_labels(self, adjacency: dict[str, set[str]]) -> dict[str, str]:
        return {nid: nid for nid in adjacency}

    def run_pass(self, adjacency: dict[str, set[str]], labels: dict[str, str]) -> int:
        """One pass in random order. Returns how many nodes changed label."""
        order = sorted(adjacency)
        self._rng.shuffle(order)
        changed = 0
        for nid in order:
            neighbors = adjacency[nid]
            if not neighbors:
                continue
            counts = Counter(labels[n] for n in neighbors)
            best = max(counts.values())
            tied = sorted(label for label, count in counts.items() if count == best)
            if labels[nid] in tied:
                continue
            labels[nid] = tied[0] if len(tied) == 1 else self._rng.choice(tied)
            changed += 1
        return changed

    def converged(self, changed: int, total: int, threshold: float) -> bool:
        return total == 0 or changed / total < threshold

    def detect(
        self,
        adjacency: dict[str, set[str]],
        max_iterations: int = 10,
        convergence_threshold: float = 0.01,
    ) -> dict[str, str]:
        """Final label per node."""
        labels = self.initial_labels(adjacency)
        for _ in range(max_iterations):
            changed = self.run_pass(adjacency, labels)
            if self.converged(changed, len(adjacency), convergence_threshold):
                break
        return labels


def group_by_label(labels: dict[str, str]) -> dict[str, set[str]]:
    groups: dict[str, set[str]] = {}
    for nid, label in labels.items():
        groups.setdefault(label, set()).add(nid)
    return groups


def overlap(a: set[str], b: set[str]) -> float:
    """|a ∩ b| / min(|a|, |b|)."""
    smaller = min(len(a), len(b))
    if smaller == 0:
        return 0.0
    return len(a & b) / smaller


class CommunityDetector:
    """Owns derived community state and keeps it current.

    Labeling text comes from an injected ``labeler``; the detector itself
    never talks to a collaborator.
    """

    def __init__(
        self,
        config: CommunityConfig | None = None,
        labeler: Labeler | None = None,
        logger: logging.Logger | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or CommunityConfig()
        self._labeler = labeler
        self._log = logger or logging.getLogger(__name__)
        self._rng = rng or random.Random(self.config.seed)
        self._propagation = LabelPropagation(self._rng)
        self._clock = clock
        self._communities: dict[str, Community] = {}
        self._meta: dict[str, CommunityMeta] = {}
        self._membership: dict[str, str] = {}   # node id -> community id

    def set_labeler(self, labeler: Labeler) -> None:
        self._labeler = labeler

    # ==================== Full detection ====================

    async def detect_communities(
        self,
        nodes: list[GraphNode],
        edges: list[GraphEdge],
    ) -> list[Community]:
        """Recompute all communities from scratch and label them."""
        by_id = {n.id: n for n in nodes}
        adjacency = build_adjacency(by_id, edges)
        labels = await self._propagate(adjacency)

        communities: list[Community] = []
        for label, members in sorted(group_by_label(labels).items()):
            if not self.config.min_size <= len(members) <= self.config.max_size:
                continue
            communities.append(Community(id=_community_id(label), members=members))

        self._communities.clear()
        self._meta.clear()
        self._membership.clear()
        for community in communities:
            self._store(community)

        await self._label_all(communities, by_id)
        self._log.info(
            "Detected %d communities over %d nodes", len(communities), len(adjacency)
        )
        return communities

    async def _propagate(self, adjacency: dict[str, set[str]]) -> dict[str, str]:
        labels = self._propagation.initial_labels(adjacency)
        for _ in range(self.config.max_iterations):
            changed = self._propagation.run_pass(adjacency, labels)
            if self._propagation.converged(changed, len(adjacency), self.config.convergence_threshold):
                break
            await asyncio.sleep(0)
        return labels

    async def _label_all(self, communities: list[Community], by_id: dict[str, GraphNode]) -> None:
        size = max(1, self.config.chunk_size)
        for start in range(0, len(communities), size):
            chunk = communities[start:start + size]
            await asyncio.gather(*(self._label(c, by_id) for c in chunk))

    async def _label(self, community: Community, by_id: dict[str, GraphNode]) -> None:
        members = [by_id[m] for m in sorted(community.members) if m in by_id]
        label, confidence = "", self.config.default_confidence
        if self._labeler is not None:
            try:
                label, confidence = await self._labeler(community, members)
            except Exception as e:
                self._log.warning("Labeling %s failed, using default: %s", community.id, e)
                label, confidence = "", self.config.default_confidence
        community.label = label or default_label(members, community)
        community.confidence = max(0.0, min(1.0, confidence))

    # ==================== Incremental update ====================

    def update_node_community(self, node_id: str, neighbor_ids: Iterable[str]) -> Community:
        """Assign one new or changed node to its neighbors' plurality community.

        Equally frequent communities resolve to the lowest community id. A
        node without assigned neighbors seeds its own community.
        """
        counts = Counter(
            self._membership[n] for n in set(neighbor_ids)
            if n != node_id and n in self._membership
        )
        now = self._clock()
        if not counts:
            target_id = _community_id(node_id)
            divergence = 0.0
        else:
            best = max(counts.values())
            target_id = min(cid for cid, count in counts.items() if count == best)
            divergence = 1.0 - best / sum(counts.values())

        self._detach(node_id)
        community = self._communities.get(target_id)
        if community is None:
            community = Community(id=target_id, members=set())
            self._store(community)
        community.members.add(node_id)
        self._membership[node_id] = target_id

        meta = self._meta[target_id]
        meta.member_count = len(community.members)
        meta.last_update_time = now
        meta.divergence_score = divergence
        return community

    def remove_node(self, node_id: str) -> None:
        """Forget a deleted node's membership."""
        self._detach(node_id)

    def _detach(self, node_id: str) -> None:
        previous = self._membership.pop(node_id, None)
        if previous is None:
            return
        community = self._communities.get(previous)
        if community is None:
            return
        community.members.discard(node_id)
        if not community.members:
            del self._communities[previous]
            del self._meta[previous]
        else:
            meta = self._meta[previous]
            meta.member_count = len(community.members)
            meta.last_update_time = self._clock()

    # ==================== Merge ====================

    def merge_communities(
        self,
        communities: list[Community] | None = None,
        min_similarity: float | None = None,
    ) -> list[Community]:
        """Greedily merge overlapping communities, one merge per community.

        The merged community keeps the higher-confidence label and the lower
        of the two confidences. Without an explicit list the tracked
        communities are merged in place.
        """
        threshold = self.config.min_similarity if min_similarity is None else min_similarity
        tracked = communities is None
        pool = list(self._communities.values()) if tracked else list(communities)

        used: set[int] = set()
        result: list[Community] = []
        for i, first in enumerate(pool):
            if i in used:
                continue
            for j in range(i + 1, len(pool)):
                if j in used:
                    continue
                second = pool[j]
                if overlap(first.members, second.members) < threshold:
                    continue
                keeper = second if second.confidence > first.confidence else first
                merged = Community(
                    id=keeper.id,
                    members=first.members | second.members,
                    label=keeper.label,
                    confidence=min(first.confidence, second.confidence),
                )
                used.update((i, j))
                result.append(merged)
                self._log.debug("Merged %s and %s into %s", first.id, second.id, merged.id)
                break
            else:
                result.append(first)

        if tracked:
            self._replace_all(result)
        return result

    def _replace_all(self, communities: list[Community]) -> None:
        old_meta = self._meta
        self._communities = {}
        self._meta = {}
        self._membership = {}
        now = self._clock()
        for community in communities:
            previous = old_meta.get(community.id)
            self._store(community, divergence=previous.divergence_score if previous else 0.0)
            self._meta[community.id].last_update_time = now
            if previous is not None:
                self._meta[community.id].summary = previous.summary

    # ==================== Refresh ====================

    def get_communities_needing_refresh(self, threshold: float) -> list[Community]:
        return [
            self._communities[cid] for cid, meta in sorted(self._meta.items())
            if meta.divergence_score > threshold
        ]

    async def refresh_community(
        self,
        community_id: str,
        nodes: list[GraphNode],
        edges: list[GraphEdge],
    ) -> list[Community]:
        """Recompute one community over its induced subgraph.

        The largest resulting group keeps the community id and label; other
        groups of at least ``min_size`` become new communities. Divergence
        resets to 0.
        """
        community = self.get_community(community_id)
        by_id = {n.id: n for n in nodes if n.id in community.members}
        adjacency = build_adjacency(community.members, edges)
        labels = await self._propagate(adjacency)
        groups = sorted(group_by_label(labels).values(), key=lambda g: (-len(g), min(g)))

        for member in list(community.members):
            self._membership.pop(member, None)
        del self._communities[community_id]
        meta = self._meta.pop(community_id)

        refreshed: list[Community] = []
        for index, members in enumerate(groups):
            if index == 0:
                kept = Community(
                    id=community_id,
                    members=members,
                    label=community.label,
                    confidence=community.confidence,
                )
                self._store(kept)
                self._meta[community_id].summary = meta.summary
                refreshed.append(kept)
            elif len(members) >= self.config.min_size:
                split = Community(id=self._unused_id(_community_id(min(members))), members=members)
                self._store(split)
                await self._label(split, by_id)
                refreshed.append(split)

        self._log.info("Refreshed %s into %d communities", community_id, len(refreshed))
        return refreshed

    # ==================== Accessors ====================

    def get_community(self, community_id: str) -> Community:
        community = self._communities.get(community_id)
        if community is None:
            raise CommunityNotFoundError(community_id)
        return community

    def get_community_meta(self, community_id: str) -> CommunityMeta:
        meta = self._meta.get(community_id)
        if meta is None:
            raise CommunityNotFoundError(community_id)
        return meta

    def get_community_divergence(self, community_id: str) -> float:
        return self.get_community_meta(community_id).divergence_score

    def set_community_summary(self, community_id: str, summary: str) -> None:
        self.get_community_meta(community_id).summary = summary

    def community_of(self, node_id: str) -> Community | None:
        cid = self._membership.get(node_id)
        return self._communities.get(cid) if cid else None

    def communities(self) -> list[Community]:
        return [self._communities[cid] for cid in sorted(self._communities)]

    def clear(self) -> None:
        self._communities.clear()
        self._meta.clear()
        self._membership.clear()

    def _unused_id(self, base: str) -> str:
        """``base``, or ``base_2``, ``base_3``... when already taken."""
        candidate = base
        suffix = 2
        while candidate in self._communities:
            candidate = f"{base}_{suffix}"
            suffix += 1
        return candidate

    def _store(self, community: Community, divergence: float = 0.0) -> None:
        self._communities[community.id] = community
        self._meta[community.id] = CommunityMeta(
            member_count=len(community.members),
            last_update_time=self._clock(),
            divergence_score=divergence,
        )
        for member in community.members:
            self._membership[member] = community.id


def _community_id(label: str) -> str:
    return label if label.startswith("community_") else f"community_{label}"


def default_label(members: list[GraphNode], community: Community) -> str:
    names = [m.text for m in members[:3] if m.text]
    if names:
        return ", ".join(name[:40] for name in names)
    return f"Community of {len(community.members)} nodes"

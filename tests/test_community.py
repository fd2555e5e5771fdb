"""Tests for label propagation and community bookkeeping."""

import random

import pytest

from src.chronograph.errors import CommunityNotFoundError
from src.chronograph.models import Community, GraphEdge, GraphNode
from src.chronograph.operators.community import (
    CommunityConfig,
    CommunityDetector,
    LabelPropagation,
    build_adjacency,
    overlap,
)

T0 = 1_700_000_000.0


def nodes(*ids: str) -> list[GraphNode]:
    return [GraphNode(id=i, type="entity", content={"name": i.upper()}, created_at=T0) for i in ids]


def edges(*pairs: tuple[str, str]) -> list[GraphEdge]:
    return [
        GraphEdge(type="relates_to", source_id=a, target_id=b, created_at=T0)
        for a, b in pairs
    ]


TWO_TRIANGLES = edges(("a", "b"), ("b", "c"), ("c", "a"), ("d", "e"), ("e", "f"), ("f", "d"))


class TestLabelPropagation:
    """Tests for the propagation algorithm itself."""

    def test_adjacency_is_undirected_and_restricted(self):
        adjacency = build_adjacency(["a", "b"], edges(("a", "b"), ("b", "zzz"), ("a", "a")))
        assert adjacency == {"a": {"b"}, "b": {"a"}}

    @pytest.mark.parametrize("seed", range(10))
    def test_disjoint_triangles_settle_separately(self, seed):
        adjacency = build_adjacency("abcdef", TWO_TRIANGLES)
        labels = LabelPropagation(random.Random(seed)).detect(adjacency)

        assert labels["a"] == labels["b"] == labels["c"]
        assert labels["d"] == labels["e"] == labels["f"]
        assert labels["a"] != labels["d"]

    def test_isolated_node_keeps_own_label(self):
        labels = LabelPropagation(random.Random(1)).detect({"solo": set()})
        assert labels == {"solo": "solo"}


class TestDetectCommunities:
    """Tests for full detection and labeling."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [0, 7, 42])
    async def test_two_triangles_give_two_communities(self, seed):
        detector = CommunityDetector(CommunityConfig(seed=seed))
        found = await detector.detect_communities(nodes(*"abcdef"), TWO_TRIANGLES)

        assert sorted(sorted(c.members) for c in found) == [["a", "b", "c"], ["d", "e", "f"]]
        assert all(c.id.startswith("community_") for c in found)

    @pytest.mark.asyncio
    async def test_small_groups_are_dropped(self):
        detector = CommunityDetector(CommunityConfig(seed=3))
        found = await detector.detect_communities(nodes("a", "b", "x"), edges(("a", "b")))
        assert found == []

    @pytest.mark.asyncio
    async def test_labeler_output_is_used(self):
        async def labeler(community, members):
            return "Team " + "".join(sorted(m.id for m in members)), 0.8

        detector = CommunityDetector(CommunityConfig(seed=1), labeler=labeler)
        found = await detector.detect_communities(nodes(*"abcdef"), TWO_TRIANGLES)

        assert sorted(c.label for c in found) == ["Team abc", "Team def"]
        assert all(c.confidence == 0.8 for c in found)

    @pytest.mark.asyncio
    async def test_labeler_failure_falls_back_to_default(self):
        async def labeler(community, members):
            raise RuntimeError("llm down")

        detector = CommunityDetector(CommunityConfig(seed=1), labeler=labeler)
        found = await detector.detect_communities(nodes(*"abcdef"), TWO_TRIANGLES)

        labels = sorted(c.label for c in found)
        assert labels == ["A, B, C", "D, E, F"]
        assert all(c.confidence == 0.0 for c in found)


class TestIncrementalUpdate:
    """Tests for single-node community assignment."""

    @pytest.fixture
    async def detector(self):
        detector = CommunityDetector(CommunityConfig(seed=5))
        await detector.detect_communities(nodes(*"abcdef"), TWO_TRIANGLES)
        return detector

    @pytest.mark.asyncio
    async def test_joins_plurality_community(self, detector):
        target = detector.community_of("a")
        community = detector.update_node_community("x", ["a", "b", "d"])

        assert community.id == target.id
        assert "x" in community.members
        assert detector.get_community_divergence(target.id) == pytest.approx(1 - 2 / 3)
        assert detector.get_community_meta(target.id).member_count == 4

    @pytest.mark.asyncio
    async def test_tie_goes_to_lowest_community_id(self, detector):
        first, second = detector.community_of("a").id, detector.community_of("d").id
        community = detector.update_node_community("x", ["a", "d"])

        assert community.id == min(first, second)
        assert detector.get_community_divergence(community.id) == pytest.approx(0.5)
        needing = detector.get_communities_needing_refresh(0.4)
        assert [c.id for c in needing] == [community.id]

    def test_node_without_neighbors_seeds_community(self):
        detector = CommunityDetector()
        community = detector.update_node_community("lonely", [])
        assert community.id == "community_lonely"
        assert community.members == {"lonely"}
        assert detector.get_community_divergence("community_lonely") == 0.0

    def test_moving_a_node_detaches_it(self):
        detector = CommunityDetector()
        detector.update_node_community("a", [])
        detector.update_node_community("b", [])
        detector.update_node_community("b", ["a"])

        assert detector.community_of("b").id == "community_a"
        with pytest.raises(CommunityNotFoundError):
            detector.get_community("community_b")

    def test_remove_node(self):
        detector = CommunityDetector()
        detector.update_node_community("a", [])
        detector.update_node_community("b", ["a"])
        detector.remove_node("b")
        assert detector.get_community("community_a").members == {"a"}
        assert detector.get_community_meta("community_a").member_count == 1


class TestMerge:
    """Tests for overlap-based merging."""

    def test_overlap(self):
        assert overlap({"a", "b"}, {"b", "c", "d"}) == 0.5
        assert overlap(set(), {"a"}) == 0.0

    def test_merge_overlapping_pair(self):
        detector = CommunityDetector()
        merged = detector.merge_communities(
            [
                Community(id="c1", members={"n1", "n2", "n3"}, label="first", confidence=0.9),
                Community(id="c2", members={"n2", "n3", "n4"}, label="second", confidence=0.6),
            ],
            min_similarity=0.5,
        )

        assert len(merged) == 1
        assert merged[0].members == {"n1", "n2", "n3", "n4"}
        assert merged[0].id == "c1"
        assert merged[0].label == "first"
        assert merged[0].confidence == 0.6

    def test_below_threshold_stays_apart(self):
        detector = CommunityDetector()
        merged = detector.merge_communities(
            [
                Community(id="c1", members={"n1", "n2", "n3"}),
                Community(id="c2", members={"n3", "n4", "n5"}),
            ],
            min_similarity=0.5,
        )
        assert [c.id for c in merged] == ["c1", "c2"]

    def test_tracked_merge_replaces_state(self):
        detector = CommunityDetector(CommunityConfig(min_similarity=0.5))
        for node_id in ("n1", "n2", "n3"):
            detector.update_node_community(node_id, ["n1"] if node_id != "n1" else [])
        detector.update_node_community("n4", [])
        detector.update_node_community("n5", ["n4"])

        merged = detector.merge_communities()
        assert sorted(c.id for c in merged) == ["community_n1", "community_n4"]
        assert detector.community_of("n5").id == "community_n4"


class TestRefresh:
    """Tests for recomputing a drifted community."""

    @pytest.fixture
    def detector(self):
        detector = CommunityDetector(CommunityConfig(seed=2))
        detector.update_node_community("a", [])
        for node_id in "bcdef":
            detector.update_node_community(node_id, ["a"])
        detector.get_community_meta("community_a").divergence_score = 0.9
        return detector

    @pytest.mark.asyncio
    async def test_refresh_splits_and_resets_divergence(self, detector):
        refreshed = await detector.refresh_community("community_a", nodes(*"abcdef"), TWO_TRIANGLES)

        assert [c.id for c in refreshed] == ["community_a", "community_d"]
        assert refreshed[0].members == {"a", "b", "c"}
        assert refreshed[1].members == {"d", "e", "f"}
        assert detector.get_community_divergence("community_a") == 0.0
        assert detector.community_of("e").id == "community_d"
        assert detector.get_communities_needing_refresh(0.5) == []

    @pytest.mark.asyncio
    async def test_split_keeps_existing_community_intact(self):
        detector = CommunityDetector(CommunityConfig(seed=2))
        detector.update_node_community("d", [])
        detector.update_node_community("z", ["d"])
        detector.update_node_community("a", [])
        for node_id in "bcdef":
            detector.update_node_community(node_id, ["a"])
        assert detector.get_community("community_d").members == {"z"}

        refreshed = await detector.refresh_community("community_a", nodes(*"abcdef"), TWO_TRIANGLES)

        assert [c.id for c in refreshed] == ["community_a", "community_d_2"]
        assert detector.get_community("community_d").members == {"z"}
        assert detector.community_of("z").id == "community_d"
        assert detector.community_of("e").id == "community_d_2"

    @pytest.mark.asyncio
    async def test_unknown_community_raises(self, detector):
        with pytest.raises(CommunityNotFoundError):
            await detector.refresh_community("community_nope", [], [])

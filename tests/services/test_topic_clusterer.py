"""Tests for topic clustering, cluster management and expertise scoring."""

import pytest

from models.errors import DatabaseError, NotFoundError
from models.postgres import ClusterMembership
from models.schemas import (
    ClusteringOptions,
    CreateTopicClusterInput,
    UpdateTopicClusterInput,
)
from services.topic_clusterer import (
    TopicClusterer,
    author_key,
    common_tags,
    compute_expertise,
)
from tests.factories import ContentItemFactory, TopicClusterFactory
from tests.mocks.llm_mock import blend, unit_vector


@pytest.fixture
def clusterer(content_repo, graph_repo, mock_embeddings, mock_llm, settings):
    return TopicClusterer(
        content_repo,
        graph_repo,
        embedding_service=mock_embeddings,
        llm=mock_llm,
        settings=settings,
    )


@pytest.fixture
def corpus(content_repo):
    """Two tight groups of three items plus one outlier, newest first."""
    database = [
        ContentItemFactory.create(
            title="Postgres schema review",
            embedding=unit_vector(0),
            tags=["db", "infra"],
            author_id="alice",
            hours_offset=10,
        ),
        ContentItemFactory.create(
            title="Postgres index tuning",
            embedding=blend(0, 1, 0.1),
            tags=["db"],
            author_id="alice",
            hours_offset=9,
        ),
        ContentItemFactory.create(
            title="Postgres vacuum settings",
            embedding=blend(0, 2, 0.2),
            tags=["db", "perf"],
            author_id="bob",
            hours_offset=8,
        ),
    ]
    deploys = [
        ContentItemFactory.create(
            title=f"Deploy pipeline step {i}",
            embedding=blend(3, 4, 0.1 * i),
            tags=["ci"],
            author_external="U-carol",
            hours_offset=7 - i,
        )
        for i in range(3)
    ]
    outlier = ContentItemFactory.create(
        title="Team offsite", embedding=unit_vector(6), hours_offset=0
    )
    content_repo.add(*database, *deploys, outlier)
    return {"database": database, "deploys": deploys, "outlier": outlier}


def _store_cluster(graph_repo, **kwargs):
    cluster = TopicClusterFactory.create(**kwargs)
    graph_repo.clusters[cluster.id] = cluster
    return cluster


# ============================================================================
# Pure helpers
# ============================================================================


class TestCommonTags:
    def test_majority_tags(self):
        items = [
            ContentItemFactory.create(tags=["a", "b"]),
            ContentItemFactory.create(tags=["a"]),
            ContentItemFactory.create(tags=["a", "c"]),
        ]
        assert common_tags(items) == ["a"]

    def test_half_rounds_up(self):
        items = [
            ContentItemFactory.create(tags=["a", "b"]),
            ContentItemFactory.create(tags=["a", "b"]),
            ContentItemFactory.create(tags=["c"]),
            ContentItemFactory.create(tags=[]),
        ]
        assert common_tags(items) == ["a", "b"]

    def test_repeated_tag_counts_once_per_item(self):
        items = [
            ContentItemFactory.create(tags=["a", "a", "a"]),
            ContentItemFactory.create(tags=[]),
            ContentItemFactory.create(tags=[]),
        ]
        assert common_tags(items) == []

    def test_empty(self):
        assert common_tags([]) == []


class TestExpertise:
    def _membership(self, relevance):
        return ClusterMembership(
            id="m", cluster_id="c", content_item_id="i", relevance_score=relevance
        )

    def test_author_key_fallbacks(self):
        assert author_key(ContentItemFactory.create(author_id="u1", author_name="Ann")) == "u1"
        assert author_key(ContentItemFactory.create(author_external="U9")) == "U9"
        assert author_key(ContentItemFactory.create(author_name="Ann")) == "Ann"
        assert author_key(ContentItemFactory.create()) == "unknown"

    def test_scores_relative_to_top_author(self):
        alice = ContentItemFactory.create(author_id="alice")
        bob = ContentItemFactory.create(author_id="bob")
        rows = compute_expertise(
            [
                (self._membership(1.0), alice),
                (self._membership(1.0), alice),
                (self._membership(0.5), bob),
            ]
        )
        scores = {row["author_key"]: row for row in rows}

        assert scores["alice"]["expertise_score"] == pytest.approx(1.0)
        assert scores["alice"]["contribution_count"] == 2
        # 0.5 * 1/2 + 0.5 * 0.5/2
        assert scores["bob"]["expertise_score"] == pytest.approx(0.375)

    def test_zero_relevance_contributes_nothing(self):
        item = ContentItemFactory.create(author_id="alice")
        rows = compute_expertise([(self._membership(0.0), item)])
        assert rows[0]["expertise_score"] == pytest.approx(0.5)

    def test_no_members(self):
        assert compute_expertise([]) == []


# ============================================================================
# Auto clustering
# ============================================================================


class TestAutoCluster:
    @pytest.mark.asyncio
    async def test_groups_similar_items(self, clusterer, corpus, graph_repo, mock_llm):
        mock_llm.set_json_response("postgres", {"name": "Database", "description": "Postgres ops."})
        mock_llm.set_json_response("deploy", {"name": "Deployments"})

        result = await clusterer.auto_cluster(ClusteringOptions(organization_id="org-1"))

        assert [c.name for c in result.clusters] == ["Database", "Deployments"]
        assert result.clusters[0].item_ids == [item.id for item in corpus["database"]]
        assert result.clusters[0].description == "Postgres ops."
        assert result.clusters[0].tags == ["db"]
        assert result.unclustered_items == [corpus["outlier"].id]
        assert result.errors == []

        stored = graph_repo.clusters[result.clusters[0].cluster_id]
        assert stored.member_count == 3
        assert stored.name == "Database"

    @pytest.mark.asyncio
    async def test_seed_relevance_is_one(self, clusterer, corpus):
        result = await clusterer.auto_cluster(
            ClusteringOptions(organization_id="org-1", use_ai=False, persist=False)
        )

        members = result.clusters[0].members
        assert members[0].relevance_score == 1.0
        assert members[1].relevance_score == pytest.approx(1 / (1.01**0.5))

    @pytest.mark.asyncio
    async def test_computes_expertise_for_stored_clusters(self, clusterer, corpus, graph_repo):
        result = await clusterer.auto_cluster(
            ClusteringOptions(organization_id="org-1", use_ai=False)
        )

        experts = await clusterer.get_topic_experts(result.clusters[0].cluster_id)

        assert [e.author_key for e in experts] == ["alice", "bob"]
        assert experts[0].contribution_count == 2
        assert experts[0].expertise_score == pytest.approx(1.0)
        assert experts[1].expertise_score < 0.5

    @pytest.mark.asyncio
    async def test_without_ai_uses_numbered_names(self, clusterer, corpus, mock_llm):
        result = await clusterer.auto_cluster(
            ClusteringOptions(organization_id="org-1", use_ai=False, persist=False)
        )

        assert [c.name for c in result.clusters] == ["Topic 1", "Topic 2"]
        assert mock_llm.get_call_count() == 0

    @pytest.mark.asyncio
    async def test_naming_failure_keeps_default_name(self, clusterer, corpus, mock_llm):
        mock_llm.set_error(RuntimeError("model unavailable"))

        result = await clusterer.auto_cluster(
            ClusteringOptions(organization_id="org-1", persist=False)
        )

        assert [c.name for c in result.clusters] == ["Topic 1", "Topic 2"]

    @pytest.mark.asyncio
    async def test_unparseable_name_keeps_default(self, clusterer, corpus, mock_llm):
        mock_llm.set_default_response("I think these are about databases.")

        result = await clusterer.auto_cluster(
            ClusteringOptions(organization_id="org-1", persist=False)
        )
        assert result.clusters[0].name == "Topic 1"

    @pytest.mark.asyncio
    async def test_dry_run_stores_nothing(self, clusterer, corpus, graph_repo):
        result = await clusterer.auto_cluster(
            ClusteringOptions(organization_id="org-1", use_ai=False, persist=False)
        )

        assert len(result.clusters) == 2
        assert all(c.cluster_id is None for c in result.clusters)
        assert graph_repo.clusters == {}

    @pytest.mark.asyncio
    async def test_max_clusters(self, clusterer, corpus):
        result = await clusterer.auto_cluster(
            ClusteringOptions(organization_id="org-1", max_clusters=1, use_ai=False, persist=False)
        )

        assert len(result.clusters) == 1
        assert len(result.unclustered_items) == 4

    @pytest.mark.asyncio
    async def test_too_few_items(self, clusterer, content_repo, mock_llm):
        items = [
            ContentItemFactory.create(embedding=unit_vector(0), hours_offset=-i) for i in range(2)
        ]
        content_repo.add(*items)

        result = await clusterer.auto_cluster(ClusteringOptions(organization_id="org-1"))

        assert result.clusters == []
        assert result.unclustered_items == [item.id for item in items]
        assert mock_llm.get_call_count() == 0

    @pytest.mark.asyncio
    async def test_pair_clusters_and_outlier_stays_unclustered(self, clusterer, content_repo):
        first = ContentItemFactory.create(embedding=unit_vector(0), hours_offset=2)
        second = ContentItemFactory.create(embedding=blend(0, 1, 0.2), hours_offset=1)
        other = ContentItemFactory.create(embedding=unit_vector(5), hours_offset=0)
        content_repo.add(first, second, other)

        result = await clusterer.auto_cluster(
            ClusteringOptions(
                organization_id="org-1",
                min_cluster_size=2,
                similarity_threshold=0.7,
                use_ai=False,
                persist=False,
            )
        )

        assert [c.item_ids for c in result.clusters] == [[first.id, second.id]]
        assert result.unclustered_items == [other.id]

    @pytest.mark.asyncio
    async def test_group_smaller_than_minimum_is_not_a_cluster(
        self, clusterer, content_repo, mock_llm
    ):
        pair = [
            ContentItemFactory.create(embedding=unit_vector(0), hours_offset=3),
            ContentItemFactory.create(embedding=blend(0, 1, 0.1), hours_offset=2),
        ]
        loners = [
            ContentItemFactory.create(embedding=unit_vector(4), hours_offset=1),
            ContentItemFactory.create(embedding=unit_vector(6), hours_offset=0),
        ]
        content_repo.add(*pair, *loners)

        result = await clusterer.auto_cluster(
            ClusteringOptions(organization_id="org-1", min_cluster_size=3)
        )

        assert result.clusters == []
        assert result.unclustered_items == [item.id for item in pair + loners]
        assert mock_llm.get_call_count() == 0

    @pytest.mark.asyncio
    async def test_items_without_embeddings_are_ignored(self, clusterer, corpus, content_repo):
        bare = ContentItemFactory.create(title="No vector", hours_offset=20)
        content_repo.add(bare)

        result = await clusterer.auto_cluster(
            ClusteringOptions(organization_id="org-1", use_ai=False, persist=False)
        )
        assert bare.id not in result.unclustered_items

    @pytest.mark.asyncio
    async def test_persist_failure_is_per_cluster(self, clusterer, corpus, graph_repo):
        graph_repo.fail_when = lambda op, arg: op == "add_cluster" and arg.name == "Topic 1"

        result = await clusterer.auto_cluster(
            ClusteringOptions(organization_id="org-1", use_ai=False)
        )

        assert [e.cluster_name for e in result.errors] == ["Topic 1"]
        assert result.clusters[0].cluster_id is None
        assert result.clusters[1].cluster_id in graph_repo.clusters
        assert len(graph_repo.clusters) == 1
        assert graph_repo.rollbacks == 1


# ============================================================================
# Matching and related clusters
# ============================================================================


class TestMatching:
    @pytest.mark.asyncio
    async def test_find_best_cluster(self, clusterer, content_repo, graph_repo):
        database = _store_cluster(graph_repo, name="Database", centroid=unit_vector(0))
        _store_cluster(graph_repo, name="Deployments", centroid=unit_vector(3))
        _store_cluster(graph_repo, name="Empty", centroid=None)
        item = ContentItemFactory.create(embedding=blend(0, 3, 0.3))
        content_repo.add(item)

        match = await clusterer.find_best_cluster(item.id)

        assert match.cluster.id == database.id
        assert match.relevance == pytest.approx(1 / (1.09**0.5))

    @pytest.mark.asyncio
    async def test_no_cluster_close_enough(self, clusterer, content_repo, graph_repo):
        _store_cluster(graph_repo, centroid=unit_vector(0))
        item = ContentItemFactory.create(embedding=unit_vector(5))
        content_repo.add(item)

        assert await clusterer.find_best_cluster(item.id) is None

    @pytest.mark.asyncio
    async def test_item_without_embedding(self, clusterer, content_repo, graph_repo):
        _store_cluster(graph_repo, centroid=unit_vector(0))
        item = ContentItemFactory.create()
        content_repo.add(item)

        assert await clusterer.find_best_cluster(item.id) is None
        assert await clusterer.find_best_cluster("missing") is None

    @pytest.mark.asyncio
    async def test_related_clusters(self, clusterer, graph_repo):
        base = _store_cluster(graph_repo, name="Database", centroid=unit_vector(0))
        near = _store_cluster(graph_repo, name="Storage", centroid=blend(0, 1, 0.5))
        nearer = _store_cluster(graph_repo, name="Postgres", centroid=blend(0, 1, 0.1))
        _store_cluster(graph_repo, name="Hiring", centroid=unit_vector(4))
        _store_cluster(graph_repo, name="Other org", centroid=unit_vector(0), organization_id="org-2")

        related = await clusterer.get_related_clusters(base.id)

        assert [r.cluster_id for r in related] == [nearer.id, near.id]

    @pytest.mark.asyncio
    async def test_related_clusters_for_unknown_cluster(self, clusterer):
        assert await clusterer.get_related_clusters("missing") == []


# ============================================================================
# Cluster management
# ============================================================================


class TestClusterManagement:
    @pytest.mark.asyncio
    async def test_create_cluster(self, clusterer, content_repo, graph_repo, mock_embeddings):
        items = [ContentItemFactory.create(author_id="alice") for _ in range(2)]
        content_repo.add(*items)
        mock_embeddings.set_embedding("Search Search relevance work ranking", unit_vector(2))

        cluster = await clusterer.create_cluster(
            CreateTopicClusterInput(
                organization_id="org-1",
                name="Search",
                description="Search relevance work",
                tags=["ranking"],
                item_ids=[items[0].id, items[1].id, items[0].id],
            )
        )

        assert graph_repo.clusters[cluster.id] is cluster
        assert cluster.member_count == 2
        assert cluster.centroid_embedding == unit_vector(2)
        experts = await clusterer.get_topic_experts(cluster.id)
        assert [(e.author_key, e.contribution_count) for e in experts] == [("alice", 2)]

    @pytest.mark.asyncio
    async def test_create_cluster_without_embedding(self, clusterer, graph_repo, mock_embeddings):
        mock_embeddings.set_error(RuntimeError("quota exceeded"))

        cluster = await clusterer.create_cluster(
            CreateTopicClusterInput(organization_id="org-1", name="Search")
        )

        assert cluster.centroid_embedding is None
        assert cluster.member_count == 0

    @pytest.mark.asyncio
    async def test_create_cluster_failure(self, clusterer, graph_repo):
        graph_repo.fail_when = lambda op, arg: op == "add_cluster"

        with pytest.raises(DatabaseError):
            await clusterer.create_cluster(
                CreateTopicClusterInput(organization_id="org-1", name="Search")
            )
        assert graph_repo.clusters == {}

    @pytest.mark.asyncio
    async def test_get_cluster(self, clusterer, content_repo, graph_repo):
        cluster = _store_cluster(graph_repo)
        item = ContentItemFactory.create()
        content_repo.add(item)
        await clusterer.add_to_cluster(cluster.id, [item.id], relevance_score=0.4)

        detail = await clusterer.get_cluster(cluster.id)

        assert detail.cluster is cluster
        assert [(m.relevance_score, i.id) for m, i in detail.members] == [(0.4, item.id)]

    @pytest.mark.asyncio
    async def test_get_missing_cluster(self, clusterer):
        with pytest.raises(NotFoundError):
            await clusterer.get_cluster("missing")

    @pytest.mark.asyncio
    async def test_list_clusters_by_size(self, clusterer, graph_repo):
        small = _store_cluster(graph_repo, name="Small", member_count=1)
        large = _store_cluster(graph_repo, name="Large", member_count=9)

        clusters = await clusterer.list_clusters("org-1")

        assert [c.id for c in clusters] == [large.id, small.id]
        assert await clusterer.list_clusters("org-1", limit=1, offset=1) == [small]

    @pytest.mark.asyncio
    async def test_update_cluster(self, clusterer, graph_repo, mock_embeddings):
        cluster = _store_cluster(graph_repo, name="Databases", centroid=unit_vector(0))
        mock_embeddings.set_embedding("Data platform", unit_vector(5))

        updated = await clusterer.update_cluster(
            cluster.id, UpdateTopicClusterInput(name="Data platform")
        )

        assert updated.name == "Data platform"
        assert updated.centroid_embedding == unit_vector(5)
        assert graph_repo.commits == 1

    @pytest.mark.asyncio
    async def test_empty_update_is_a_noop(self, clusterer, graph_repo, mock_embeddings):
        cluster = _store_cluster(graph_repo)

        assert await clusterer.update_cluster(cluster.id, UpdateTopicClusterInput()) is cluster
        assert graph_repo.commits == 0
        assert mock_embeddings.get_call_count() == 0

    @pytest.mark.asyncio
    async def test_delete_cluster(self, clusterer, content_repo, graph_repo):
        cluster = _store_cluster(graph_repo)
        item = ContentItemFactory.create(author_id="alice")
        content_repo.add(item)
        await clusterer.add_to_cluster(cluster.id, [item.id])

        await clusterer.delete_cluster(cluster.id)

        assert graph_repo.clusters == {}
        assert graph_repo.memberships == {}
        assert graph_repo.expertise == {}
        with pytest.raises(NotFoundError):
            await clusterer.delete_cluster(cluster.id)

    @pytest.mark.asyncio
    async def test_add_and_remove_members(self, clusterer, content_repo, graph_repo):
        cluster = _store_cluster(graph_repo)
        alice = ContentItemFactory.create(author_id="alice")
        bob = ContentItemFactory.create(author_id="bob")
        content_repo.add(alice, bob)

        assert await clusterer.add_to_cluster(cluster.id, [alice.id, bob.id], 1.7) == 2
        assert graph_repo.memberships[(cluster.id, alice.id)].relevance_score == 1.0

        assert await clusterer.remove_from_cluster(cluster.id, [bob.id]) == 1
        experts = await clusterer.get_topic_experts(cluster.id)
        assert [e.author_key for e in experts] == ["alice"]

    @pytest.mark.asyncio
    async def test_add_to_missing_cluster(self, clusterer):
        with pytest.raises(NotFoundError):
            await clusterer.add_to_cluster("missing", ["item"])

    @pytest.mark.asyncio
    async def test_add_failure_rolls_back(self, clusterer, graph_repo):
        cluster = _store_cluster(graph_repo)
        graph_repo.fail_when = lambda op, arg: op == "add_members"

        with pytest.raises(DatabaseError):
            await clusterer.add_to_cluster(cluster.id, ["item"])
        assert graph_repo.rollbacks == 1

    @pytest.mark.asyncio
    async def test_update_expertise_scores(self, clusterer, content_repo, graph_repo):
        cluster = _store_cluster(graph_repo)
        items = [
            ContentItemFactory.create(author_id="alice"),
            ContentItemFactory.create(author_name="Bob"),
        ]
        content_repo.add(*items)
        await graph_repo.add_members(cluster.id, [(i.id, 0.8) for i in items])

        assert await clusterer.update_expertise_scores(cluster.id) == 2
        assert {e.author_key for e in graph_repo.expertise.values()} == {"alice", "Bob"}

    @pytest.mark.asyncio
    async def test_update_expertise_for_missing_cluster(self, clusterer):
        with pytest.raises(NotFoundError):
            await clusterer.update_expertise_scores("missing")


# ============================================================================
# Topic extraction
# ============================================================================


class TestExtractTopics:
    @pytest.mark.asyncio
    async def test_extracts_topics(self, clusterer, content_repo, mock_llm):
        item = ContentItemFactory.create(
            title="Login outage", content="Users could not sign in after the SSO rollout."
        )
        content_repo.add(item)
        mock_llm.set_json_response(
            "login outage",
            [{"topic": "authentication", "confidence": 0.9}, {"topic": "misc", "confidence": 0.2}],
        )

        topics = await clusterer.extract_topics(item.id)

        assert [t.topic for t in topics] == ["authentication"]
        assert mock_llm.get_last_call()["temperature"] == 0.2

    @pytest.mark.asyncio
    async def test_short_content(self, clusterer, content_repo, mock_llm):
        item = ContentItemFactory.create(title="ok", content="thanks")
        content_repo.add(item)

        assert await clusterer.extract_topics(item.id) == []
        assert mock_llm.get_call_count() == 0

    @pytest.mark.asyncio
    async def test_model_failure(self, clusterer, content_repo, mock_llm):
        item = ContentItemFactory.create(content="A long enough discussion about caching layers.")
        content_repo.add(item)
        mock_llm.set_error(RuntimeError("timeout"))

        assert await clusterer.extract_topics(item.id) == []

    @pytest.mark.asyncio
    async def test_missing_item(self, clusterer):
        with pytest.raises(NotFoundError):
            await clusterer.extract_topics("missing")

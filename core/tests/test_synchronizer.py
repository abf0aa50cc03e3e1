"""Tests for the join barrier."""

from proposal_engine.graph.edge import JoinSpec
from proposal_engine.graph.synchronizer import Synchronizer


def make_sync() -> Synchronizer:
    return Synchronizer(
        JoinSpec(
            node="intelligenceSynchronizer",
            predecessors=["strategicInitiatives", "decisionMakers"],
            expected_channels={"strategicInitiatives": ["intelligence"]},
        )
    )


class TestSynchronizer:
    def test_ready_only_after_every_predecessor(self):
        sync = make_sync()
        barriers = {}

        barriers = sync.record_arrival(barriers, "decisionMakers", written=set())
        assert not sync.is_ready(barriers)
        assert sync.missing(barriers) == ["strategicInitiatives"]

        barriers = sync.record_arrival(barriers, "strategicInitiatives", written={"intelligence"})
        assert sync.is_ready(barriers)
        assert sync.arrived(barriers) == ["decisionMakers", "strategicInitiatives"]

    def test_missing_expected_channel_does_not_count(self, caplog):
        sync = make_sync()

        barriers = sync.record_arrival({}, "strategicInitiatives", written={"errors"})

        assert barriers == {}
        assert "not counted" in caplog.text

    def test_does_not_mutate_input(self):
        sync = make_sync()
        original = {"intelligenceSynchronizer": ["decisionMakers"]}

        updated = sync.record_arrival(original, "strategicInitiatives", written={"intelligence"})

        assert original == {"intelligenceSynchronizer": ["decisionMakers"]}
        assert updated["intelligenceSynchronizer"] == ["decisionMakers", "strategicInitiatives"]

    def test_duplicate_and_unrelated_arrivals_are_ignored(self):
        sync = make_sync()
        barriers = sync.record_arrival({}, "decisionMakers", written=set())

        assert sync.record_arrival(barriers, "decisionMakers", written=set()) is barriers
        assert sync.record_arrival(barriers, "deepResearch", written=set()) is barriers

    def test_reset_opens_next_epoch(self):
        sync = make_sync()
        barriers = {"intelligenceSynchronizer": ["decisionMakers"], "other": ["x"]}

        assert sync.reset(barriers) == {"other": ["x"]}
        assert sync.missing(sync.reset(barriers)) == ["strategicInitiatives", "decisionMakers"]

"""
Tests for node reconciliation and per-gear processing in script/broker_auth.py.
"""

from typing import Tuple

import pytest
from conftest import make_inventory

from script.broker_auth import (
    GENERATION_ERROR,
    PLANNED,
    QUEUED,
    REACHABILITY_ERROR,
    RESOLUTION_ERROR,
    Application,
    Reporter,
    find_discrepancies,
    process_gears,
    report_discrepancies,
)


class FakeIssuer:
    def __init__(self, fail_for: Tuple[str, ...] = ()) -> None:
        self.fail_for = fail_for
        self.calls = []

    def generate_broker_key(self, app: Application) -> Tuple[str, str]:
        self.calls.append(app.uuid)
        if app.name in self.fail_for:
            raise ValueError(f"cannot encrypt for {app.name}")
        return f"iv-{app.uuid}", f"token-{app.uuid}"


class TestFindDiscrepancies:
    """Datastore nodes versus nodes that answered discovery."""

    @pytest.mark.parametrize(
        "known, live, expected",
        [
            ({"a", "b", "c"}, {"a", "b"}, {"c"}),
            ({"a", "b"}, {"a", "b", "c"}, set()),
            (set(), {"a"}, set()),
            ({"a", "b"}, set(), {"a", "b"}),
        ],
    )
    def test_reports_exactly_known_minus_live(self, known, live, expected):
        assert find_discrepancies(known, live) == expected

    def test_seen_nodes_do_not_change_result(self):
        """Seen nodes are always live, so clearing them is a no-op on the diff."""
        known = {"a", "b", "c"}
        live = {"a", "b"}
        assert find_discrepancies(known, live, seen_nodes={"a"}) == {"c"}

    def test_input_is_not_mutated(self):
        known = {"a", "b"}
        find_discrepancies(known, {"a"}, seen_nodes={"a"})
        assert known == {"a", "b"}

    def test_report_adds_one_failure_per_node(self):
        rep = Reporter()
        report_discrepancies({"c", "d"}, rep)
        assert rep.failures() == 2
        assert sorted(x.target for x in rep.items) == ["c", "d"]
        assert all("offline or renamed" in x.details for x in rep.items)


class TestProcessGears:
    """Per-gear resolution, reachability and job construction."""

    def test_example_fleet(self):
        """Known {A,B,C}, live {A,B}, gears on A and B: both queued, C flagged."""
        inv = make_inventory({"x": [("g1", "A")], "y": [("g2", "B")], "z": [("g3", "C")]})
        outcomes, batch, seen = process_gears(
            ["g1", "g2"], inv, {"A", "B"}, FakeIssuer()
        )

        assert [o.status for o in outcomes] == [QUEUED, QUEUED]
        assert len(batch) == 2
        assert batch.nodes() == ["A", "B"]
        assert seen == {"A", "B"}
        assert find_discrepancies(inv.list_distinct_host_nodes(), {"A", "B"}, seen) == {"C"}

    def test_one_outcome_per_requested_gear(self, inventory):
        issuer = FakeIssuer(fail_for=("shop",))
        uuids = ["g1", "missing", "g3", "g4", "g2"]
        outcomes, batch, _ = process_gears(uuids, inventory, {"node1", "node2"}, issuer)

        assert [o.gear_uuid for o in outcomes] == uuids
        assert [o.status for o in outcomes] == [
            QUEUED,
            RESOLUTION_ERROR,
            GENERATION_ERROR,
            REACHABILITY_ERROR,
            QUEUED,
        ]
        assert sorted(j.gear_uuid for j in batch) == ["g1", "g2"]

    def test_unreachable_gear_never_dispatched(self, inventory):
        issuer = FakeIssuer()
        outcomes, batch, seen = process_gears(["g4"], inventory, {"node1"}, issuer)

        assert outcomes[0].status == REACHABILITY_ERROR
        assert outcomes[0].server_identity == "node3"
        assert "renamed" in outcomes[0].detail
        assert len(batch) == 0
        assert issuer.calls == []
        assert seen == set()

    def test_generation_error_does_not_abort_batch(self, inventory, capsys):
        issuer = FakeIssuer(fail_for=("blog",))
        outcomes, batch, seen = process_gears(
            ["g1", "g3"], inventory, {"node1", "node2"}, issuer
        )

        assert [o.status for o in outcomes] == [GENERATION_ERROR, QUEUED]
        assert "cannot encrypt for blog" in outcomes[0].detail
        assert [j.gear_uuid for j in batch] == ["g3"]
        assert seen == {"node1"}
        assert "key generation failed" in capsys.readouterr().err

    def test_missing_issuer_is_generation_error(self, inventory):
        outcomes, batch, _ = process_gears(["g1"], inventory, {"node1"}, None)
        assert outcomes[0].status == GENERATION_ERROR
        assert len(batch) == 0

    def test_dry_run_never_builds_jobs(self, inventory):
        issuer = FakeIssuer()
        outcomes, batch, seen = process_gears(
            ["g1", "g2", "g4", "nope"],
            inventory,
            {"node1", "node2"},
            issuer,
            dry_run=True,
        )

        assert [o.status for o in outcomes] == [
            PLANNED,
            PLANNED,
            REACHABILITY_ERROR,
            RESOLUTION_ERROR,
        ]
        assert len(batch) == 0
        assert issuer.calls == []
        assert seen == {"node1", "node2"}

    def test_jobs_carry_their_own_key_material(self, inventory):
        _, batch, _ = process_gears(["g1", "g3"], inventory, {"node1"}, FakeIssuer())
        jobs = {j.gear_uuid: j for j in batch}
        assert jobs["g1"].token == "token-app-blog"
        assert jobs["g3"].token == "token-app-shop"
        assert {j.server_identity for j in jobs.values()} == {"node1"}

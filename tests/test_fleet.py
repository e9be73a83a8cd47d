import pytest

import fleet
from fleet import FleetSnapshot, Node, NodeState, SnapshotFetcher
from errors import TransientFetchError
from conftest import droplet


def test_public_ipv4_prefers_public_address():
    d = {"id": 1, "networks": {"v4": [
        {"ip_address": "10.0.0.5", "type": "private"},
        {"ip_address": "203.0.113.7", "type": "public"},
    ]}}
    assert fleet.public_ipv4(d) == "203.0.113.7"
    assert fleet.public_ipv4({"id": 2, "networks": {"v4": []}}) == ""
    assert fleet.public_ipv4({"id": 3}) == ""


def test_node_from_api():
    node = Node.from_api(droplet(42, ip="198.51.100.1"))
    assert node.id == 42
    assert node.address == "198.51.100.1"
    assert node.state == NodeState.HEALTHY
    assert node.created_at.year == 2024
    assert node.tags == ["nodejs"]


def test_snapshot_helpers():
    snapshot = FleetSnapshot([Node(1, "10.0.0.1"), Node(2), Node(3, "10.0.0.3")])
    assert len(snapshot) == 3
    assert snapshot.ids() == [1, 2, 3]
    assert snapshot.get(2).address == ""
    assert snapshot.get(9) is None
    assert [n.id for n in snapshot.addressed()] == [1, 3]


def test_fetch_filters_by_tag_and_records_snapshot(cloud, o_state):
    cloud.droplets = [droplet(1, ip="10.0.0.1"), droplet(2, tag="other"), droplet(3)]
    snapshot = SnapshotFetcher(cloud, o_state).fetch()
    assert snapshot.ids() == [1, 3]
    assert o_state.snapshot is snapshot


def test_fetch_failure_is_transient(cloud, o_state):
    cloud.fail_list = True
    with pytest.raises(TransientFetchError):
        SnapshotFetcher(cloud, o_state).fetch()
    assert o_state.snapshot is None


def test_fetch_malformed_node_is_transient(cloud):
    cloud.droplets = [{"tags": ["nodejs"]}]
    with pytest.raises(TransientFetchError):
        SnapshotFetcher(cloud).fetch()

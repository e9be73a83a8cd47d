""" fleet.py

Fleet view built from the cloud API.

The fleet is the set of nodes carrying the 'fleet.tag_name' tag. A FleetSnapshot is rebuilt from scratch on every
fetch: no fleet state survives across ticks (or process restarts) except what the cloud API reports.
"""
import enum

import misc
import config as Cfg
from errors import CloudAPIError, TransientFetchError

from aws_xray_sdk.core import xray_recorder

import cslog
log = cslog.logger(__name__)


class NodeState(enum.Enum):
    PROVISIONING     = "Provisioning"
    AWAITING_ADDRESS = "AwaitingAddress"
    WARMING_UP       = "WarmingUp"
    HEALTHY          = "Healthy"
    DEAD             = "Dead"

PRE_HEALTHY_STATES = [NodeState.PROVISIONING, NodeState.AWAITING_ADDRESS, NodeState.WARMING_UP]


class Node:
    def __init__(self, id, address="", state=NodeState.HEALTHY, created_at=None, tags=None):
        self.id         = id
        self.address    = address if address is not None else ""
        self.state      = state
        self.created_at = created_at
        self.tags       = list(tags) if tags is not None else []

    @staticmethod
    def from_api(droplet, state=NodeState.HEALTHY):
        return Node(droplet["id"],
            address=public_ipv4(droplet),
            state=state,
            created_at=misc.str2utc(droplet.get("created_at")),
            tags=droplet.get("tags") or [])

    def __eq__(self, other):
        if not isinstance(other, Node):
            return NotImplemented
        return (self.id, self.address, self.state) == (other.id, other.address, other.state)

    def __repr__(self):
        return "Node(id=%s, address='%s', state=%s)" % (self.id, self.address, self.state.value)


def public_ipv4(droplet):
    """ Return the first IPv4 address reported for the droplet or "" if none yet.

    Public addresses are preferred over private ones.
    """
    v4 = ((droplet.get("networks") or {}).get("v4") or [])
    v4 = [n for n in v4 if n.get("ip_address")]
    if len(v4) == 0:
        return ""
    public = next(filter(lambda n: n.get("type") == "public", v4), None)
    return (public if public is not None else v4[0])["ip_address"]


class FleetSnapshot:
    """ Ordered sequence of fleet nodes, as reported by the cloud API at 'fetched_at'.
    """
    def __init__(self, nodes, fetched_at=None):
        self.nodes      = list(nodes)
        self.fetched_at = fetched_at if fetched_at is not None else misc.utc_now()

    def __len__(self):
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes)

    def ids(self):
        return [n.id for n in self.nodes]

    def get(self, node_id):
        return next(filter(lambda n: n.id == node_id, self.nodes), None)

    def addressed(self):
        return [n for n in self.nodes if n.address != ""]

    def __repr__(self):
        return "FleetSnapshot(%d nodes, fetched_at=%s)" % (len(self.nodes), self.fetched_at)


class SnapshotFetcher:
    def __init__(self, cloud_api, o_state=None, tag=None):
        self.cloud_api = cloud_api
        self.o_state   = o_state
        self.tag       = tag

    @staticmethod
    def register_config():
        Cfg.register({
            "fleet.tag_name,Stable": {
                "DefaultValue": "nodejs",
                "Format"      : "String",
                "Description" : """Tag identifying the nodes that belong to the managed fleet.

New nodes are created with this tag and only nodes carrying it are probed and registered in the load balancer.
                """
            },
            "fleet.min_node_count,Stable": {
                "DefaultValue": "1",
                "Format"      : "Integer",
                "Description" : """Minimum number of nodes to keep in the fleet.

A node that fails its warm-up is deleted only while the fleet is bigger than this value. Otherwise it is
promoted anyway (fail-open).
                """
            }
        })

    @xray_recorder.capture(name="SnapshotFetcher.fetch")
    def fetch(self):
        tag = self.tag if self.tag is not None else Cfg.get("fleet.tag_name")
        try:
            droplets = self.cloud_api.list_nodes(tag)
        except CloudAPIError as e:
            raise TransientFetchError(f"Failed to list fleet nodes with tag '{tag}': {e}") from e
        try:
            snapshot = FleetSnapshot([Node.from_api(d) for d in droplets])
        except (KeyError, TypeError, AttributeError) as e:
            raise TransientFetchError(f"Malformed node description in fleet list: {e}") from e
        log.debug("Fetched %s" % snapshot)
        if self.o_state is not None:
            self.o_state.set_snapshot(snapshot)
        return snapshot

"""
Shared pytest fixtures and fakes of the external collaborators (cloud API, node health endpoints).
"""
import threading

import pytest
import requests

import config as Cfg
import notify
import vault
import cloudapi
import decision
import fleet
import health
import loadbalancer
import lifecycle
import state
from errors import CloudAPIError


def droplet(node_id, ip=None, tag="nodejs", created_at="2024-05-01T10:00:00Z"):
    networks = {"v4": []}
    if ip is not None:
        networks["v4"].append({"ip_address": ip, "type": "public"})
    return {"id": node_id, "networks": networks, "tags": [tag], "created_at": created_at}


class FakeCloudAPI:
    def __init__(self, droplets=None):
        self.droplets       = list(droplets) if droplets is not None else []
        self.lock           = threading.Lock()
        self.created        = []
        self.deleted        = []
        self.lb_puts        = []
        self.next_id        = 1000
        self.fail_list      = False
        self.fail_create    = False
        self.fail_delete    = False
        self.fail_lb        = False

    def list_nodes(self, tag):
        if self.fail_list:
            raise CloudAPIError("list failed", status_code=503)
        with self.lock:
            return [dict(d) for d in self.droplets if tag in d.get("tags", [])]

    def create_node(self, spec):
        if self.fail_create:
            raise CloudAPIError("create failed", status_code=422)
        with self.lock:
            self.next_id += 1
            d = droplet(self.next_id, tag=spec["tags"][0])
            self.droplets.append(d)
            self.created.append(spec)
            return dict(d)

    def delete_node(self, node_id):
        if self.fail_delete:
            raise CloudAPIError("delete failed", status_code=500)
        with self.lock:
            self.deleted.append(node_id)
            self.droplets = [d for d in self.droplets if d["id"] != node_id]
        return True

    def put_load_balancer(self, lb_id, payload):
        if self.fail_lb:
            raise CloudAPIError("lb failed", status_code=500)
        self.lb_puts.append((lb_id, payload))
        return {"load_balancer": payload}

    def assign_address(self, node_id, ip):
        with self.lock:
            for d in self.droplets:
                if d["id"] == node_id:
                    d["networks"] = {"v4": [{"ip_address": ip, "type": "public"}]}


class FakeResponse:
    def __init__(self, body=None, status_code=200, invalid_json=False):
        self.body         = body
        self.status_code  = status_code
        self.invalid_json = invalid_json

    def json(self):
        if self.invalid_json:
            raise ValueError("No JSON object could be decoded")
        return self.body


class FakeHealthSession:
    """ Answer health probes by node address.

    'answers' maps an address to a dict body, a FakeResponse, or an exception instance to raise.
    """
    def __init__(self, answers=None):
        self.answers = dict(answers) if answers is not None else {}
        self.calls   = []
        self.lock    = threading.Lock()

    def post(self, url, json=None, timeout=None):
        address = url.split("//")[1].split(":")[0]
        with self.lock:
            self.calls.append({"url": url, "json": json, "timeout": timeout})
        answer = self.answers.get(address, requests.exceptions.ConnectionError("connection refused"))
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, FakeResponse):
            return answer
        return FakeResponse(answer)


def register_all():
    notify.init()
    vault.register_config()
    cloudapi.register_config()
    decision.register_config()
    fleet.SnapshotFetcher.register_config()
    health.HealthProber.register_config()
    loadbalancer.LoadBalancerSynchronizer.register_config()
    lifecycle.NodeLifecycleController.register_config()


@pytest.fixture(autouse=True)
def cfg():
    Cfg.init({}, with_predefined_configuration=False)
    register_all()
    Cfg.set("loadbalancer.id", "lb-1")
    notify.clear_events()
    yield Cfg
    notify.clear_events()


@pytest.fixture
def cloud():
    return FakeCloudAPI()


@pytest.fixture
def o_state():
    return state.ControlState()


@pytest.fixture
def health_session():
    return FakeHealthSession()


@pytest.fixture
def components(cloud, o_state, health_session):
    fetcher    = fleet.SnapshotFetcher(cloud, o_state)
    prober     = health.HealthProber("s3cr3t", o_state, session=health_session)
    lb_sync    = loadbalancer.LoadBalancerSynchronizer(cloud, o_state)
    controller = lifecycle.NodeLifecycleController(cloud, fetcher, prober, lb_sync, o_state, start_threads=False)
    return {
        "cloud": cloud,
        "o_state": o_state,
        "session": health_session,
        "fetcher": fetcher,
        "prober": prober,
        "lb_sync": lb_sync,
        "controller": controller,
    }

""" lifecycle.py

Life cycle of a newly created fleet node.

    Provisioning --(create OK)--> AwaitingAddress --(address seen)--> WarmingUp --(valid probe)--> Healthy
         |                                                                |
    (create KO: guard released)                              (warm-up timeout) --> Dead  (fleet > minimum)
                                                                          |
                                                                          +------> Healthy (fail-open, fleet <= minimum)

Only one node may be in the pre-Healthy part of this machine at a time: the creation guard held in ControlState is
claimed before the create call and released only by a terminal transition.

Once the node exists, two independent timers run:
    * a warm-up poller thread, looking every 'lifecycle.warmup_poll_interval' for the node address and then probing it,
    * a warm-up timeout timer ('lifecycle.warmup_timeout').
Both compete for the same WarmupGate: whichever closes it first performs its transition, the other one is a no-op.
"""
import threading

from jinja2 import Template

import misc
import config as Cfg
import notify
from notify import record_call as R
from fleet import Node, NodeState, PRE_HEALTHY_STATES
from errors import CreateFailure, LbUpdateError, TransientFetchError

from aws_xray_sdk.core import xray_recorder

import cslog
log = cslog.logger(__name__)

DEFAULT_USER_DATA = """#cloud-config
runcmd:
 - git -C {{ app_dir }} pull origin {{ git_branch }}
 - /usr/bin/yarn --cwd {{ app_dir }}
 - forever start {{ app_dir }}/server/server.js
"""


class WarmupGate:
    """ Single cancellation token of a node life cycle.

    close() succeeds exactly once; the outcome of the first caller is kept.
    """
    def __init__(self):
        self._lock    = threading.Lock()
        self._closed  = threading.Event()
        self._outcome = None

    def close(self, outcome):
        with self._lock:
            if self._outcome is not None:
                return False
            self._outcome = outcome
            self._closed.set()
            return True

    def wait(self, timeout):
        """ Sleep up to 'timeout' seconds. Return True if the gate is closed.
        """
        return self._closed.wait(timeout)

    @property
    def closed(self):
        return self._closed.is_set()

    @property
    def outcome(self):
        with self._lock:
            return self._outcome


class NodeLifecycle:
    def __init__(self, node):
        self.node   = node
        self.gate   = WarmupGate()
        self.thread = None
        self.timer  = None


class NodeLifecycleController:
    def __init__(self, cloud_api, fetcher, prober, lb_sync, o_state, start_threads=True):
        self.cloud_api     = cloud_api
        self.fetcher       = fetcher
        self.prober        = prober
        self.lb_sync       = lb_sync
        self.o_state       = o_state
        self.start_threads = start_threads
        self._lock         = threading.Lock()
        self._active       = None

    @staticmethod
    def register_config():
        Cfg.register({
            "lifecycle.warmup_poll_interval": "seconds=5",
            "lifecycle.warmup_timeout,Stable": {
                "DefaultValue": "minutes=5",
                "Format"      : "Duration",
                "Description" : """Maximum delay for a new node to answer a valid health probe.

Past this delay, the node is deleted if the fleet is bigger than 'fleet.min_node_count'. Otherwise, it is
promoted anyway (fail-open) to avoid deleting the only available capacity.
                """
            },
            "lifecycle.cooldown,Stable": {
                "DefaultValue": "minutes=5",
                "Format"      : "Duration",
                "Description" : """Delay after a node promotion during which no scale-up is performed.

It leaves time to the fleet load to stabilize with the new node serving traffic.
                """
            },
            "node.name": "nodesquad-node",
            "node.region": "sfo2",
            "node.size": "s-1vcpu-1gb",
            "node.image,Stable": {
                "DefaultValue": "",
                "Format"      : "String",
                "Description" : """Image (id or slug) used to create new fleet nodes."""
            },
            "node.ssh_keys": "",
            "node.app_dir": "/root/app",
            "node.git_branch": "main",
            "node.user_data_url": "",
            "node.user_data_template": DEFAULT_USER_DATA
        })

    def user_data(self):
        template = Cfg.get("node.user_data_template")
        url      = Cfg.get("node.user_data_url")
        if url != "":
            content = misc.get_url(url)
            if content is not None:
                template = str(content, "utf-8")
        return Template(template).render(
                app_dir=Cfg.get("node.app_dir"),
                git_branch=Cfg.get("node.git_branch"),
                tag=Cfg.get("fleet.tag_name"),
                region=Cfg.get("node.region"))

    def node_spec(self):
        return {
            "name": Cfg.get("node.name"),
            "region": Cfg.get("node.region"),
            "size": Cfg.get("node.size"),
            "image": Cfg.get("node.image"),
            "ssh_keys": Cfg.get_list("node.ssh_keys", default=[]),
            "backups": False,
            "ipv6": False,
            "user_data": self.user_data(),
            "private_networking": None,
            "monitoring": False,
            "volumes": None,
            "tags": [Cfg.get("fleet.tag_name")]
        }

    def current_lifecycle(self):
        with self._lock:
            return self._active

    def active_node(self):
        with self._lock:
            lc = self._active
        if lc is None or lc.node.state not in PRE_HEALTHY_STATES:
            return None
        return lc.node

    def pre_healthy_ids(self):
        node = self.active_node()
        return [node.id] if node is not None else []

    @xray_recorder.capture(name="NodeLifecycleController.request_creation")
    def request_creation(self):
        """ Create a new fleet node and start its warm-up.

        Return the new node id, or None if a creation is already in flight. Raise CreateFailure if the cloud API
        refused the creation (the creation guard is released).
        """
        if not self.o_state.try_begin_creation():
            log.info("Node creation already in flight (%s): ignoring creation request." % self.o_state.creation_in_flight)
            return None

        notify.record_event("NodeCreationStart")
        try:
            droplet = R(None, self.cloud_api.create_node, self.node_spec())
            node    = Node.from_api(droplet, state=NodeState.PROVISIONING)
        except Exception as e:
            self.o_state.clear_creation()
            notify.record_event("NodeCreationFailure", Reason=str(e))
            raise CreateFailure(f"Failed to create node: {e}") from e

        if node.created_at is None:
            node.created_at = misc.utc_now()
        self.o_state.set_creation_node(node.id)
        node.state = NodeState.AWAITING_ADDRESS
        log.info("Created node %s. Waiting for its address and first valid health probe..." % node.id)
        notify.record_event("NodeCreationSuccess", NodeId=node.id)
        self._start_lifecycle(node)
        return node.id

    def _start_lifecycle(self, node):
        lc = NodeLifecycle(node)
        with self._lock:
            self._active = lc
        if not self.start_threads:
            return lc
        lc.timer = threading.Timer(Cfg.get_duration_secs("lifecycle.warmup_timeout"), self.on_warmup_timeout, args=[lc])
        lc.timer.daemon = True
        lc.thread = threading.Thread(target=self._warmup_loop, args=[lc], name="warmup-%s" % node.id, daemon=True)
        lc.timer.start()
        lc.thread.start()
        return lc

    def _warmup_loop(self, lc):
        interval = Cfg.get_duration_secs("lifecycle.warmup_poll_interval")
        while not lc.gate.wait(interval):
            try:
                self.poll_once(lc)
            except Exception:
                log.exception("Unexpected error while polling node %s warm-up!" % lc.node.id)
        log.debug("Warm-up poller of node %s stopped (outcome=%s)." % (lc.node.id, lc.gate.outcome))

    def poll_once(self, lc):
        """ Run one warm-up poll of the node. Return True if the node got promoted by this poll.
        """
        if lc.gate.closed:
            return False
        node = lc.node
        try:
            snapshot = self.fetcher.fetch()
        except TransientFetchError as e:
            log.warning("Warm-up poll of node %s could not list the fleet: %s" % (node.id, e))
            return False

        found = snapshot.get(node.id)
        if found is None or found.address == "":
            log.debug("Node %s has no address yet." % node.id)
            return False
        if node.address != found.address:
            log.info("Node %s got address %s." % (node.id, found.address))
        node.address = found.address
        if node.state == NodeState.AWAITING_ADDRESS:
            node.state = NodeState.WARMING_UP

        result = self.prober.probe_one(node.id, node.address)
        if result.failed:
            log.debug("Node %s is not healthy yet: %s" % (node.id, result.reason))
            return False
        return self.promote(lc, load_metric=result.load_metric)

    def promote(self, lc, load_metric=None):
        if not lc.gate.close("promoted"):
            return False
        self._complete_promotion(lc, fail_open=False, load_metric=load_metric)
        return True

    def on_warmup_timeout(self, lc):
        """ Warm-up timeout event. Return the resulting outcome or None if the life cycle was already settled.
        """
        if not lc.gate.close("timeout"):
            return None
        node     = lc.node
        minimum  = Cfg.get_int("fleet.min_node_count")
        size     = self._current_fleet_size()
        if size is not None and size > minimum:
            log.warning("Node %s did not become healthy in time: deleting it (fleet size=%d, minimum=%d)." % (node.id, size, minimum))
            try:
                R(None, self.cloud_api.delete_node, node.id)
            except Exception as e:
                log.error("Failed to delete dead node %s: %s" % (node.id, e))
            node.state = NodeState.DEAD
            self.o_state.mark_dead(node.id)
            self.o_state.clear_creation(node.id)
            notify.record_event("WarmupTimeoutDeletion", NodeId=node.id, FleetSize=size, MinimumSize=minimum)
            return "deleted"

        log.warning("Node %s did not become healthy in time but fleet is at minimum size (fleet size=%s, minimum=%d): "
                "promoting it anyway (fail-open)." % (node.id, size, minimum))
        self._complete_promotion(lc, fail_open=True)
        return "fail-open"

    def _current_fleet_size(self):
        try:
            return len(self.fetcher.fetch())
        except TransientFetchError as e:
            log.warning("Could not list the fleet at warm-up timeout, using last known fleet: %s" % e)
        snapshot = self.o_state.snapshot
        return len(snapshot) if snapshot is not None else None

    def _complete_promotion(self, lc, fail_open=False, load_metric=None):
        node = lc.node
        if lc.timer is not None:
            lc.timer.cancel()
        node.state = NodeState.HEALTHY

        snapshot = self.o_state.snapshot
        healthy  = self.lb_sync.healthy_ids(snapshot) if snapshot is not None else []
        if node.id not in healthy:
            healthy.append(node.id)
        try:
            self.lb_sync.sync(healthy)
        except LbUpdateError as e:
            log.error("Load balancer update after promotion of node %s failed (will be retried on next change): %s" % (node.id, e))

        cooldown = Cfg.get_duration_secs("lifecycle.cooldown")
        until    = self.o_state.start_cooldown(cooldown)
        self.o_state.clear_creation(node.id)
        log.info("Node %s promoted to Healthy%s. Scale-up suppressed until %s." % (node.id, " (fail-open)" if fail_open else "", until))
        notify.record_event("NodePromoted", NodeId=node.id, FailOpen=fail_open, LoadMetric=load_metric, CooldownUntil=until)

    def shutdown(self, timeout=None):
        with self._lock:
            lc = self._active
        if lc is None:
            return
        if lc.gate.close("cancelled"):
            log.info("Cancelled warm-up of node %s." % lc.node.id)
            self.o_state.clear_creation(lc.node.id)
        if lc.timer is not None:
            lc.timer.cancel()
        if lc.thread is not None and lc.thread is not threading.current_thread():
            lc.thread.join(timeout)

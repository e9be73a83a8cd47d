""" state.py

Process wide mutable state of the control loop.

All flags are read and modified only through the named transitions below. Each transition is an atomic
read-modify-write under a single lock so that the driver thread, the probe batch and the node lifecycle
threads never interleave on the same flag.
"""
import threading
from datetime import timedelta

import misc

import cslog
log = cslog.logger(__name__)

# Creation guard value between the claim and the moment the cloud API returns the node id
PENDING_CREATION = "<pending>"


class ControlState:
    def __init__(self):
        self._lock                  = threading.Lock()
        self._creation_in_flight    = None
        self._cooldown_until        = None
        self._probe_batch_in_flight = False
        self._snapshot              = None
        self._last_pushed_members   = None
        self._dead_ids              = set()

    # Node creation guard
    def try_begin_creation(self):
        """ Claim the creation guard. Return False if a creation is already in flight.
        """
        with self._lock:
            if self._creation_in_flight is not None:
                return False
            self._creation_in_flight = PENDING_CREATION
            return True

    def set_creation_node(self, node_id):
        with self._lock:
            if self._creation_in_flight != PENDING_CREATION:
                raise RuntimeError("Creation guard not claimed (current value: %s)!" % self._creation_in_flight)
            self._creation_in_flight = node_id

    def clear_creation(self, node_id=None):
        """ Release the creation guard. When 'node_id' is given, release only if the guard is held for this node.
        """
        with self._lock:
            if node_id is not None and self._creation_in_flight not in [node_id, PENDING_CREATION]:
                return False
            self._creation_in_flight = None
            return True

    @property
    def creation_in_flight(self):
        with self._lock:
            return self._creation_in_flight

    # Post promotion cool-down
    def start_cooldown(self, duration_secs, now=None):
        if now is None: now = misc.utc_now()
        with self._lock:
            self._cooldown_until = now + timedelta(seconds=duration_secs)
            return self._cooldown_until

    def in_cooldown(self, now=None):
        if now is None: now = misc.utc_now()
        with self._lock:
            if self._cooldown_until is None:
                return False
            if now >= self._cooldown_until:
                self._cooldown_until = None
                return False
            return True

    @property
    def cooldown_until(self):
        with self._lock:
            return self._cooldown_until

    # Probe batch single-flight
    def try_begin_probe_batch(self):
        with self._lock:
            if self._probe_batch_in_flight:
                return False
            self._probe_batch_in_flight = True
            return True

    def end_probe_batch(self):
        with self._lock:
            self._probe_batch_in_flight = False

    @property
    def probe_batch_in_flight(self):
        with self._lock:
            return self._probe_batch_in_flight

    # Fleet view
    def set_snapshot(self, snapshot):
        """ Record the latest fleet listing. Dead node ids no longer listed are forgotten.
        """
        with self._lock:
            self._snapshot = snapshot
            self._dead_ids &= set(snapshot.ids())

    def mark_dead(self, node_id):
        with self._lock:
            self._dead_ids.add(node_id)

    @property
    def dead_ids(self):
        with self._lock:
            return set(self._dead_ids)

    @property
    def snapshot(self):
        with self._lock:
            return self._snapshot

    def set_pushed_members(self, member_ids):
        with self._lock:
            self._last_pushed_members = list(member_ids) if member_ids is not None else None

    @property
    def last_pushed_members(self):
        with self._lock:
            return list(self._last_pushed_members) if self._last_pushed_members is not None else None

    def describe(self):
        with self._lock:
            return {
                "CreationInFlight": self._creation_in_flight,
                "CooldownUntil": self._cooldown_until,
                "ProbeBatchInFlight": self._probe_batch_in_flight,
                "FleetSize": len(self._snapshot) if self._snapshot is not None else None,
                "LoadBalancerMembers": self._last_pushed_members,
                "DeadNodes": sorted(self._dead_ids, key=str)
            }

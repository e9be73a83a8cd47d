""" health.py

Health probing of fleet nodes.

Each node exposes 'POST http://<address>:<health.port><health.path>' taking a signed JWT ({"jwt": <token>}) and
answering a JSON document like {"usage": {"cpu": 42.5}} or {"error": "..."}.

probe_all() fans out one probe per addressed node on a thread pool and returns one ProbeResult per node once all of
them settled or 'health.probe_timeout' elapsed. The requests timeout only bounds connect and each socket read, so a
probe still running at the batch deadline is reported failed and its late answer is discarded. A failing probe
never aborts the batch: it produces a ProbeResult with failed=True.
"""
import concurrent.futures
from datetime import timedelta

import jwt
import requests

import misc
import config as Cfg
import notify
import debug as Dbg
from errors import ProbeFailure, ProbeBatchInFlight

from aws_xray_sdk.core import xray_recorder

import cslog
log = cslog.logger(__name__)


class ProbeResult:
    def __init__(self, node_id, load_metric=None, failed=False, reason=""):
        self.node_id     = node_id
        self.load_metric = load_metric
        self.failed      = failed
        self.reason      = reason

    @staticmethod
    def success(node_id, load_metric):
        return ProbeResult(node_id, load_metric=load_metric)

    @staticmethod
    def failure(node_id, reason):
        return ProbeResult(node_id, failed=True, reason=reason)

    def __repr__(self):
        if self.failed:
            return "ProbeResult(%s, failed, reason='%s')" % (self.node_id, self.reason)
        return "ProbeResult(%s, load=%s)" % (self.node_id, self.load_metric)


def extract_load_metric(body):
    """ Return the CPU usage of a health answer. Raise ProbeFailure if the answer is not a valid health report.
    """
    if not isinstance(body, dict):
        raise ProbeFailure("Health answer is not a JSON object")
    if body.get("error"):
        raise ProbeFailure("Node reported an error: %s" % body["error"])
    usage = body.get("usage")
    cpu   = usage.get("cpu") if isinstance(usage, dict) else None
    if isinstance(cpu, bool) or not isinstance(cpu, (int, float)):
        raise ProbeFailure("Health answer has no 'usage.cpu' metric")
    return float(cpu)


class HealthProber:
    def __init__(self, signing_key, o_state=None, session=None):
        self.signing_key = signing_key
        self.o_state     = o_state
        self.session     = session if session is not None else requests.Session()

    @staticmethod
    def register_config():
        Cfg.register({
            "health.port,Stable": {
                "DefaultValue": "1111",
                "Format"      : "Integer",
                "Description" : """TCP port of the node health endpoint."""
            },
            "health.path": "/api/health",
            "health.probe_timeout,Stable": {
                "DefaultValue": "seconds=5",
                "Format"      : "Duration",
                "Description" : """Maximum duration of one health probe.

A probe exceeding this delay is considered failed (no retry).
                """
            },
            "health.token_ttl": "seconds=60",
            "health.token_issuer": "nodesquad",
            "health.max_concurrency": "64"
        })

    def sign_token(self, now=None):
        """ Return a freshly signed short-lived token. The only claim beyond validity dates is the issuer identity.
        """
        if now is None: now = misc.utc_now()
        claims = {
            "iss": Cfg.get("health.token_issuer"),
            "iat": now,
            "exp": now + timedelta(seconds=Cfg.get_duration_secs("health.token_ttl"))
        }
        return jwt.encode(claims, self.signing_key, algorithm="HS256")

    def health_url(self, address):
        return "http://%s:%s%s" % (address, Cfg.get_int("health.port"), Cfg.get("health.path"))

    def probe_one(self, node_id, address, timeout=None):
        """ Probe a single node. Never raises: failures are reported in the returned ProbeResult.
        """
        if timeout is None: timeout = Cfg.get_duration_secs("health.probe_timeout")
        try:
            if address is None or address == "":
                raise ProbeFailure("Node has no address yet")
            try:
                response = self.session.post(self.health_url(address), json={"jwt": self.sign_token()}, timeout=timeout)
                body     = response.json()
            except requests.exceptions.Timeout as e:
                raise ProbeFailure("Timeout after %ss" % timeout) from e
            except (requests.exceptions.RequestException, ValueError) as e:
                raise ProbeFailure("%s: %s" % (type(e).__name__, e)) from e
            return ProbeResult.success(node_id, extract_load_metric(body))
        except ProbeFailure as e:
            log.debug("Probe of node %s (%s) failed: %s" % (node_id, address, e))
            return ProbeResult.failure(node_id, str(e))

    @xray_recorder.capture(name="HealthProber.probe_all")
    def probe_all(self, snapshot):
        """ Probe concurrently every node of the snapshot that has an address.

        Raise ProbeBatchInFlight if a previous batch did not settle yet.
        """
        if self.o_state is not None and not self.o_state.try_begin_probe_batch():
            raise ProbeBatchInFlight("Previous probe batch still in flight!")
        try:
            nodes   = snapshot.addressed()
            notify.record_event("ProbeBatchStart", NodeCount=len(nodes))
            if len(nodes) == 0:
                return []
            timeout = Cfg.get_duration_secs("health.probe_timeout")
            workers = max(1, min(len(nodes), Cfg.get_int("health.max_concurrency")))
            # Nodes beyond the pool size are probed in successive waves, each bounded by 'timeout'
            deadline = timeout * -(-len(nodes) // workers)
            executor = concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe")
            try:
                futures = [executor.submit(self.probe_one, n.id, n.address, timeout) for n in nodes]
                concurrent.futures.wait(futures, timeout=deadline)
            finally:
                # Never wait for a probe past the deadline: its late answer is discarded
                executor.shutdown(wait=False, cancel_futures=True)
            results = []
            for node, future in zip(nodes, futures):
                if not future.done() or future.cancelled():
                    future.cancel()
                    results.append(ProbeResult.failure(node.id, "Timeout after %ss" % timeout))
                    continue
                try:
                    results.append(future.result())
                except Exception as e:
                    results.append(ProbeResult.failure(node.id, "%s: %s" % (type(e).__name__, e)))
            failed = [r.node_id for r in results if r.failed]
            if len(failed):
                log.debug("Failed probes: %s" % Dbg.short_ids(failed))
            return results
        finally:
            if self.o_state is not None:
                self.o_state.end_probe_batch()

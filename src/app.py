import os

import misc
import config
import config as Cfg
import notify
import vault
import cloudapi
import fleet
import health
import decision
import loadbalancer
import lifecycle
import state
import debug as Dbg
from errors import (CreateFailure, FatalStartupError, LbUpdateError, ProbeBatchInFlight, TransientFetchError)

from aws_xray_sdk.core import xray_recorder

import cslog
log = cslog.logger(__name__)
log.debug("App started.")

# Import environment variables
ctx = {"now": misc.utc_now()}
for env in os.environ:
    ctx[env] = os.getenv(env)


@xray_recorder.capture(name="app.init")
def init(context=None, secrets=None, cloud_api=None, http_session=None, start_threads=True):
    """ Load configuration, fetch secrets and build the control loop objects into the context.

    Raise FatalStartupError when secrets can not be obtained.
    """
    if context is None: context = ctx
    try:
        config.init(context)
    except Exception as e:
        raise FatalStartupError(f"Failed to load configuration: {e}") from e
    Cfg.register({
           "app.run_period,Stable" : {
               "DefaultValue": "seconds=10",
               "Format"      : "Duration",
               "Description" : """Period of the control loop.

At each period, the fleet is listed, all nodes are probed and a scale-up decision is taken.
               """
           },
           "app.disable,Stable": {
                "DefaultValue": 0,
                "Format": "Bool",
                "Description": """Flag to disable the control loop.

While disabled, the daemon keeps running and tests at each period if this flag changed its status."""
               }
        })
    notify.init()
    vault.register_config()
    cloudapi.register_config()
    decision.register_config()
    fleet.SnapshotFetcher.register_config()
    health.HealthProber.register_config()
    loadbalancer.LoadBalancerSynchronizer.register_config()
    lifecycle.NodeLifecycleController.register_config()
    config.dump()

    if secrets is None:
        secrets = vault.fetch_secrets(context)
    if cloud_api is None:
        cloud_api = cloudapi.CloudAPI(secrets["cloud_api_key"])

    log.debug("Setup management objects.")
    context["o_state"]     = state.ControlState()
    context["o_cloudapi"]  = cloud_api
    context["o_fetcher"]   = fleet.SnapshotFetcher(cloud_api, context["o_state"])
    context["o_prober"]    = health.HealthProber(secrets["service_key"], context["o_state"], session=http_session)
    context["o_lb"]        = loadbalancer.LoadBalancerSynchronizer(cloud_api, context["o_state"])
    context["o_lifecycle"] = lifecycle.NodeLifecycleController(cloud_api, context["o_fetcher"], context["o_prober"],
            context["o_lb"], context["o_state"], start_threads=start_threads)
    log.info("Initialized control loop with minimum fleet size %d and CPU threshold %s." %
            (Cfg.get_int("fleet.min_node_count"), Cfg.get_float("scaling.cpu_threshold")))
    return context


@xray_recorder.capture(name="app.tick")
def tick(context=None, dry_run=False):
    """ Run one control loop iteration.

    Return the ScalingDecision of the tick, or None when the tick ended early. Never raises.
    With 'dry_run', a scale-up decision is reported but no node is created.
    """
    if context is None: context = ctx
    context["now"] = misc.utc_now()
    try:
        return _tick(context, dry_run)
    except Exception:
        log.exception("Unexpected error during control loop tick!")
        return None

def _tick(context, dry_run=False):
    o_state     = context["o_state"]
    o_lifecycle = context["o_lifecycle"]

    if Cfg.get_bool("app.disable"):
        log.info("Control loop disabled by 'app.disable'.")
        return None

    try:
        snapshot = context["o_fetcher"].fetch()
    except TransientFetchError as e:
        log.warning("Skipping tick: %s" % e)
        notify.record_event("SnapshotFetchError", Reason=str(e))
        return None

    try:
        context["o_lb"].reconcile(snapshot, exclude_ids=o_lifecycle.pre_healthy_ids())
    except LbUpdateError as e:
        log.error("Load balancer reconciliation failed (will be retried): %s" % e)

    try:
        results = context["o_prober"].probe_all(snapshot)
    except ProbeBatchInFlight as e:
        log.info("Skipping tick: %s" % e)
        return None

    d = decision.decide(results, creation_in_flight=o_state.creation_in_flight, in_cooldown=o_state.in_cooldown())
    log.info("Fleet load: average=%s available=%d failed=%d (%s)" % (
        "%.2f" % d.average_load if d.average_load is not None else "n/a", d.available, d.failed, d.reason))
    notify.record_event("ProbeBatchResult", AverageLoad=d.average_load, Available=d.available, Failed=d.failed)
    if not d.scale_up:
        return d

    notify.record_event("ScaleUpDecision", DryRun=dry_run, **d.as_dict())
    log.info("Scale-up decided: %s" % d.reason)
    if dry_run:
        log.info("Dry run: no node created.")
        return d
    try:
        o_lifecycle.request_creation()
    except CreateFailure as e:
        log.error("%s (a next tick may request creation again)" % e)
    return d

def main_handler(event=None, context=None):
    log.debug("Handler start.")
    r = tick()
    log.debug("Control state: %s" % Dbg.pprint(ctx["o_state"].describe()))
    return r

def sync_load_balancer(context=None, drain_most_recent=False):
    """ Push the load balancer membership from a fresh fleet listing.
    """
    if context is None: context = ctx
    snapshot = context["o_fetcher"].fetch()
    healthy  = context["o_lb"].healthy_ids(snapshot, exclude_ids=context["o_lifecycle"].pre_healthy_ids())
    return context["o_lb"].sync(healthy, remove_most_recent=drain_most_recent)

def shutdown(context=None):
    if context is None: context = ctx
    if "o_lifecycle" in context:
        context["o_lifecycle"].shutdown(timeout=5)

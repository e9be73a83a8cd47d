import sys
import signal
import argparse
import threading

import misc
import config as Cfg
import notify
import debug as Dbg
from errors import FatalStartupError, NodeSquadError

import cslog
log = cslog.logger(__name__)
log.debug("Starting daemon...")

import app

def get_period():
    default = 10
    try:
        return max(0.1, float(Cfg.get_duration_secs("app.run_period")))
    except Exception:
        log.exception("Failed to parse 'app.run_period'")
        return default


def eventloop(stop_event=None, max_iter=None, handler=None):
    """ Call the control loop handler every 'app.run_period' until 'stop_event' is set.
    """
    if stop_event is None: stop_event = threading.Event()
    if handler is None: handler = app.main_handler
    period = get_period()
    notify.record_event("LoopStart", Period=period, MinimumNodes=Cfg.get_int("fleet.min_node_count"),
            CpuThreshold=Cfg.get_float("scaling.cpu_threshold"))
    log.info("Starting control loop with period=%ss and %d minimum node(s)." % (period, Cfg.get_int("fleet.min_node_count")))
    iterations = 0
    while not stop_event.is_set():
        if max_iter is not None and iterations >= max_iter:
            break
        iterations += 1

        now = misc.utc_now()
        try:
            handler()
        except Exception:
            log.exception("Got Exception while calling control loop handler!")
        execution_time = (misc.utc_now() - now).total_seconds()
        log.debug("main_handler() took %s seconds" % execution_time)

        period = get_period() # Read at each run to catch changes quickly
        if execution_time >= period:
            log.warning("main_handler() execution time (%ss) exceeds configured 'app.run_period' (=%s)! Consider increase this value!" %
                    (execution_time, period))
        stop_event.wait(max(0, period - execution_time))
    return iterations


def parse_args(argv):
    parser = argparse.ArgumentParser(description="NodeSquad fleet autoscaler")
    parser.add_argument('command', help="Command to run ('once' is a dry run)", type=str, nargs="?", default="run",
            choices=["run", "once", "sync-lb", "dump-config"])
    parser.add_argument('--config', help="Semi-column separated list of configuration URLs to load", type=str, default=None)
    parser.add_argument('--drain-most-recent', help="With 'sync-lb': drop the most recent node from the pushed membership",
            action="store_true")
    parser.add_argument('--max-iter', help="With 'run': stop after this number of ticks", type=int, default=None)
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(sys.argv[1:] if argv is None else argv)
    if args.config is not None:
        app.ctx["NODESQUAD_CONFIG_URLS"] = args.config

    if args.command == "dump-config":
        try:
            app.init(secrets={"cloud_api_key": "-", "service_key": "-"}, start_threads=False)
        except FatalStartupError as e:
            log.error("%s" % e)
            return 1
        print(Dbg.pprint(Cfg.dumps(only_stable_keys=False)))
        return 0

    try:
        app.init(start_threads=args.command == "run")
    except FatalStartupError as e:
        log.error("Startup failed: %s" % e)
        return 1

    if args.command == "once":
        # Dry run: no lifecycle thread would ever settle a node created here
        d = app.tick(dry_run=True)
        print(Dbg.pprint(d.as_dict() if d is not None else None))
        return 0

    if args.command == "sync-lb":
        try:
            members = app.sync_load_balancer(drain_most_recent=args.drain_most_recent)
        except NodeSquadError as e:
            log.error("%s" % e)
            return 1
        print(Dbg.pprint(members))
        return 0

    stop_event = threading.Event()
    def _stop(signum, frame):
        log.info("Received signal %s: stopping control loop..." % signum)
        stop_event.set()
    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    try:
        eventloop(stop_event=stop_event, max_iter=args.max_iter)
    finally:
        app.shutdown()
    return 0


if __name__ == '__main__':
    sys.exit(main())

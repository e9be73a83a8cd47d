import sys
import json
import threading
import traceback
from collections import deque

import misc
import config as Cfg

from aws_xray_sdk.core import xray_recorder

import cslog
log = cslog.logger(__name__)

this = sys.modules[__name__]
this.events        = deque(maxlen=100)
this.events_lock   = threading.Lock()
this.do_not_notify = False

def init():
    Cfg.register({
        "notify.event.max_records": "100"
    })
    with this.events_lock:
        this.events = deque(this.events, maxlen=max(1, Cfg.get_int("notify.event.max_records")))

def record_event(event_type, **data):
    """ Emit a structured event.

    The event is logged as a single JSON line at NOTICE level and kept in a bounded in-memory ring.
    """
    event = {
        "EventType": event_type,
        "EventDate": misc.utc_now(),
        "Data"     : data
    }
    with this.events_lock:
        this.events.append(event)
    if not this.do_not_notify:
        log.log(log.NOTICE, misc.encode_json(event))
    return event

def get_events(event_type=None):
    with this.events_lock:
        events = list(this.events)
    if event_type is None:
        return events
    return [e for e in events if e["EventType"] == event_type]

def clear_events():
    with this.events_lock:
        this.events.clear()

def record_call(is_success_func, f, *args, **kwargs):
    return record_call_extended({}, is_success_func, f, *args, **kwargs)

def record_call_extended(records_args, is_success_func, f, *args, **kwargs):
    """ Call f(*args, **kwargs) and record the call as an event.

    Exceptions raised by 'f' are logged, recorded and raised again to the caller.
    """
    record = {}
    record["Input"] = {
            "*args": list(args),
            "**kwargs": dict(kwargs)
        }

    managed_exception = None
    r                 = None
    is_success        = True
    xray_recorder.begin_subsegment("notifycall-call:%s" % f.__name__)
    try:
        r = f(*args, **kwargs)
        record["Output"] = json.dumps(r, default=str)
        is_success       = is_success_func(args, kwargs, r) if is_success_func is not None else True
    except Exception as e:
        managed_exception = e
        is_success        = False
        record["Except"]  = {
                "Exception": traceback.format_exc(),
                "Reason": str(e)
            }
        log.exception("Notify handler captured exception:")
    finally:
        xray_recorder.end_subsegment()

    prefix = records_args.get("prefix", None)
    event_type = f.__name__ if prefix is None else "%s.%s" % (prefix, f.__name__)
    record["Success"] = is_success
    if not is_success or log.getEffectiveLevel() <= log.DEBUG:
        record_event(event_type, **record)

    if managed_exception is not None:
        raise managed_exception
    return r

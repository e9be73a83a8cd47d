import os
import sys
import json
from datetime import datetime
from datetime import timezone
from datetime import timedelta
import requests
from requests_file import FileAdapter

from aws_xray_sdk import global_sdk_config
# Tracing is opt-in: the control loop usually runs outside any X-Ray daemon reach
global_sdk_config.set_sdk_enabled("AWS_XRAY_SDK_ENABLED" in os.environ and os.environ["AWS_XRAY_SDK_ENABLED"] in ["1", "True", "true"])
from aws_xray_sdk.core import patch_all
patch_all()

import cslog
log = cslog.logger(__name__)


def utc_now():
    return datetime.now(tz=timezone.utc)

def str2utc(s, default=None):
    if isinstance(s, datetime):
        return s
    if not isinstance(s, str):
        return default
    try:
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        return datetime.fromisoformat(s)
    except ValueError:
        return default

def str2duration_seconds(s, no_exception=False, default=None):
    """ Parse a duration either as an integer number of seconds or as a
    timedelta keyword list (ex: 'minutes=5', 'hours=1,minutes=30').
    """
    try:
        return int(s)
    except (TypeError, ValueError):
        try:
            meta = s.split(",")
            metas = {}
            for m in meta:
                k, v = m.split("=")
                metas[k.strip()] = float(v)
            return timedelta(**metas).total_seconds()
        except Exception as e:
            if no_exception:
                return default
            raise e

def encode_json(value):
    return json.dumps(value, sort_keys=True, default=str)


def Session():
    s = requests.Session()
    s.mount('file://', FileAdapter())
    return s

def internal_paths():
    # Installed wheels ship the resources under <prefix>/share/nodesquad
    paths = [os.getcwd(), os.path.dirname(os.path.abspath(__file__)), os.path.join(sys.prefix, "share", "nodesquad"), "/opt"]
    if "NODESQUAD_DIR" in os.environ:
        paths.append(os.environ["NODESQUAD_DIR"])
        paths.append("%s/src/resources/" % os.environ["NODESQUAD_DIR"])
    return paths

def get_url(url, throw_exception_on_warning=False):
    def _warning(msg):
        if throw_exception_on_warning:
            raise Exception(msg)
        else:
            log.warning(msg)

    if url is None or url == "":
        return None

    # internal: protocol management
    internal_str = "internal:"
    if url.startswith(internal_str):
        filename = url[len(internal_str):]
        for path in internal_paths():
            for sub_path in [".", "custo", "resources" ]:
                try:
                    f = open("%s/%s/%s" % (path, sub_path, filename), "rb")
                except OSError:
                    continue
                with f:
                    return f.read()
        _warning("Fail to read internal url '%s'!" % url)
        return None

    # <other>:// protocols management
    s = Session()
    try:
        response = s.get(url)
        response.raise_for_status()
    except Exception as e:
        _warning("Failed to fetch url '%s' : %s" % (url, e))
        return None
    return response.content

""" config.py

Layered configuration registry.

Each module registers its keys with built-in defaults through register(). The effective value of a key is looked up
in the following layers (last wins):

    * Built-in defaults (register()),
    * YAML files: 'internal:predefined.config.yaml', 'internal:custom.config.yaml', the URLs listed in the
      'config.loaded_files' key and in the NODESQUAD_CONFIG_URLS environment variable,
    * Environment variables named NODESQUAD_CFG_<KEY> (ex: NODESQUAD_CFG_FLEET_MIN_NODE_COUNT for 'fleet.min_node_count'),
    * Runtime values set with set().

A key prefixed with 'override:' in any layer takes precedence over the plain key in every layer.
"""
import re
import yaml

import misc
import debug as Dbg

import cslog
log = cslog.logger(__name__)

BUILTIN_LAYER = "Built-in defaults"
ENV_LAYER     = "Environment variables"
RUNTIME_LAYER = "Runtime overrides"
ENV_PREFIX    = "NODESQUAD_CFG_"

_init = None

def init(context, with_predefined_configuration=True):
    global _init
    _init                = {}
    _init["context"]     = context
    _init["all_configs"] = [{
        "source": BUILTIN_LAYER,
        "config": {},
        "metas" : {}
        }]
    _init["loaded_files"]   = []
    _init["runtime_config"] = {}
    register({
             "config.dump_configuration,Stable" : {
                 "DefaultValue": "0",
                 "Format"      : "Bool",
                 "Description" : """Display all relevant configuration parameters in logs at startup.

    Used for debugging purpose.
                 """
             },
             "config.loaded_files,Stable" : {
                 "DefaultValue" : "",
                 "Format"       : "StringList",
                 "Description"  : """A semi-column separated list of URL to load as configuration.

Upon startup, NodeSquad loads the listed files in sequence and stacks them allowing override between layers.
Supported schemes are 'internal:', 'file://', 'http://' and 'https://'.

This key is evaluated again after each URL parsing meaning that a layer can redefine 'config.loaded_files' to load further
YAML files.
                 """
             },
             "config.max_file_hierarchy_depth" : 10,
    })

    files_to_load = ["internal:predefined.config.yaml", "internal:custom.config.yaml"] if with_predefined_configuration else []
    files_to_load.extend(get_list("config.loaded_files", default=[]))
    if context.get("NODESQUAD_CONFIG_URLS"):
        files_to_load.extend(context["NODESQUAD_CONFIG_URLS"].split(";"))

    loaded_files = []
    i = 0
    while i < len(files_to_load):
        f = files_to_load[i]
        i += 1
        if f == "":
            continue

        fd = None
        c  = None
        try:
            fd = misc.get_url(f, throw_exception_on_warning=True)
            c  = yaml.safe_load(fd)
            if c is None: c = {} # Empty YAML file
            if not isinstance(c, dict):
                raise ValueError("Configuration file must contain a YAML mapping!")
            loaded_files.append({
                    "source": f,
                    "config": c
                })
            if "config.loaded_files" in c and c["config.loaded_files"] != "":
                files_to_load.extend(str(c["config.loaded_files"]).split(";"))
            if i > get_int("config.max_file_hierarchy_depth"):
                log.warning("Too much config file loads (%s)!! Stopping here!" % [x["source"] for x in loaded_files])
                break
        except Exception as e:
            if fd  is None:
                log.debug("Failed to load config file '%s'! %s (Notice: It will be safely ignored!)" % (f, e))
            elif c is None:
                log.warning("Failed to parse config file '%s'! %s (Notice: It will be safely ignored!)" % (f, e))
            else:
                log.warning("Failed to process config file '%s'! %s (Notice: It will be safely ignored!)" % (f, e))
    _init["loaded_files"] = loaded_files
    _build_layers()


def _parse_key_definition(k):
    """ Split a registration key like 'app.run_period,Stable' into its name and metas.
    """
    items = k.split(",")
    metas = {}
    for m in items[1:]:
        if m == "": continue
        name, sep, value = m.partition("=")
        metas[name] = value if sep else True
    return items[0], metas

def register(config, ignore_double_definition=False):
    if _init is None:
        return
    builtin      = _init["all_configs"][0]
    layer_config = builtin["config"]
    layer_metas  = builtin["metas"]
    for c in config:
        key, metas = _parse_key_definition(c)
        if not ignore_double_definition and key in layer_config:
            raise Exception("Double definition of key '%s'!" % key)
        layer_config[key] = config[c]
        layer_metas[key]  = metas
    _build_layers()

def env_name(key):
    return ENV_PREFIX + re.sub("[^A-Za-z0-9]", "_", key).upper()

def _environment_layer():
    context = _init["context"]
    c       = {}
    for key in _init["all_configs"][0]["config"]:
        for k in [key, f"override:{key}"]:
            name = env_name(k.replace("override:", "override."))
            if name in context:
                c[k] = context[name]
    return {"source": ENV_LAYER, "config": c}

def _build_layers():
    layers = []
    layers.extend(_init["all_configs"])
    layers.extend(_init["loaded_files"])
    layers.append(_environment_layer())
    layers.append({"source": RUNTIME_LAYER, "config": _init["runtime_config"]})
    _init["config_layers"] = layers
    compile_keys()


def _get_config_layers(reverse=False):
    if not reverse:
        return _init["config_layers"]
    l = _init["config_layers"].copy()
    l.reverse()
    return l

def _k(key):
    return key.replace("override:", "")

def is_stable_key(key):
    metas = _init["all_configs"][0]["metas"]
    return _k(key) in metas and "Stable" in metas[_k(key)] and metas[_k(key)]["Stable"]

def keys(prefix=None, only_stable_keys=False):
    k             = []
    config_layers = _get_config_layers()
    for config_layer in config_layers:
        c = config_layer["config"]
        for key in c:
            key = _k(key)
            if key.startswith("#"): continue # Ignore commented keys
            if only_stable_keys and not is_stable_key(key):
                continue
            if prefix is not None and not key.startswith(prefix): continue
            if key not in k:
                k.append(key)
    return k

def dumps(only_stable_keys=True):
    c = {}
    for k in keys(only_stable_keys=only_stable_keys):
        c[k] = get_extended(k).copy()
        del c[k]["Success"]
    return c

def dump():
    r = dumps(only_stable_keys=False)
    for k in r:
        if "WARNING" in r[k]["Status"]:
            log.warning(r[k]["Status"])
    if get_int("config.dump_configuration"):
        log.info(Dbg.pprint(r))
        log.info("Loaded files: %s " % [ x["source"] for x in _init["loaded_files"]])
    return r

def compile_keys():
    """ Build a dictionary to quickly lookup keys.

    Note: This function searches 'override:{key}' before '{key}' names.
    """
    builtin_layer          = _init["all_configs"][0]["config"]
    _init["compiled_keys"] = {}

    for key in keys():
        r = _unknown_key(key)
        key_def = builtin_layer[key] if key in builtin_layer and isinstance(builtin_layer[key], dict) else None

        for key_pattern in [f"override:{key}", key]:
            for layer in _get_config_layers(reverse=True):
                c = layer["config"]
                if key_pattern not in c or isinstance(c[key_pattern], list):
                    continue
                if c is not builtin_layer and isinstance(c[key_pattern], dict):
                    continue
                r = {
                    "Key": key,
                    "Success": True,
                    "ConfigurationOrigin" : layer["source"],
                    "Status": "Key found in '%s'" % layer["source"],
                    "Stable": is_stable_key(key),
                    "Override": key_pattern.startswith("override:"),
                    "Value": c[key_pattern]
                }
                if key_def is not None:
                    for k in key_def:
                        if k != "DefaultValue": r[k] = key_def[k]
                    if c is builtin_layer:
                        r["Value"] = key_def["DefaultValue"]
                if key not in builtin_layer:
                    r["Status"] = "[WARNING] Key '%s' doesn't exist as built-in default (Misconfiguration??) but %s!" % (key, r["Status"])
                break
            if r["Success"]:
                break
        _init["compiled_keys"][key] = r

def _unknown_key(key):
    return {
        "Key": key,
        "Value" : None,
        "Success" : False,
        "ConfigurationOrigin": "None",
        "Status": "[WARNING] Unknown configuration key '%s'" % key,
        "Stable": False,
        "Override": False
    }

def set(key, value):
    """ Set a key in the runtime layer. A None value removes the runtime definition.
    """
    if value is None:
        _init["runtime_config"].pop(key, None)
    else:
        _init["runtime_config"][key] = value
    compile_keys()

def get_extended(key, fmt=None):
    if key in _init["compiled_keys"]:
        r = dict(_init["compiled_keys"][key])
    else:
        r = _unknown_key(key)
    if fmt and isinstance(r["Value"], str):
        r["Value"] = r["Value"].format(**fmt)
    return r

def get(key, cls=str, none_on_failure=False, fmt=None):
    r = get_extended(key, fmt=fmt)
    if not r["Success"]:
        if none_on_failure:
            return None
        else:
            raise Exception(r["Status"])
    try:
        if cls == str:
            return str(r["Value"]) if r["Value"] is not None else None
        if cls == int:
            return int(r["Value"])
        if cls == float:
            return float(r["Value"])
    except Exception as e:
        if none_on_failure:
            return None
        raise Exception(f"Failed to convert key '{key}' with value '%s' : {e}" % r["Value"])

def get_int(key, fmt=None):
    return get(key, cls=int, fmt=fmt)

def get_float(key, fmt=None):
    return get(key, cls=float, fmt=fmt)

def get_bool(key, fmt=None):
    v = get(key, fmt=fmt)
    return v is not None and v.strip().lower() in ["1", "true", "yes", "on"]

def get_list(key, separator=";", default=None, fmt=None):
    v = get(key, fmt=fmt)
    if v is None or v == "": return default
    return [i for i in v.split(separator) if i != ""]

def get_duration_secs(key, fmt=None):
    try:
        return misc.str2duration_seconds(get(key, fmt=fmt))
    except Exception as e:
        raise Exception("[ERROR] Failed to parse config key '%s' as a duration! : %s" % (key, e))

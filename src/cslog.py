import os
import logging
NOTICE = 25
logging.addLevelName(NOTICE,"NOTICE")

_HANDLER_FLAG = "_nodesquad_handler"

def is_debug():
    return "NODESQUAD_DEBUG" in os.environ and os.environ["NODESQUAD_DEBUG"] in ["1", "True", "true"]

def parse_log_spec(spec_string):
    """ Parse a 'module=LEVEL,*=LEVEL' specification into a dict.
    """
    log_spec = {}
    for spec in spec_string.split(","):
        if spec == "" or "=" not in spec:
            continue
        k, v = spec.split("=", 1)
        log_spec[k.strip()] = v.strip()
    return log_spec


def logger(name):
    logger        = logging.getLogger(name)
    logger.NOTICE = NOTICE
    logger.DEBUG  = logging.DEBUG

    log_spec = None
    if "NODESQUAD_LOGLEVELS" in os.environ:
        log_spec = parse_log_spec(os.environ["NODESQUAD_LOGLEVELS"])
    debug_mode = is_debug()

    log_level = logging.DEBUG if debug_mode else logging.INFO
    if log_spec is not None and (name in log_spec or "*" in log_spec):
        module_log_spec = log_spec[name] if name in log_spec else log_spec["*"]
        level = getattr(logging, module_log_spec, None)
        if level is None and module_log_spec == "NOTICE":
            level = NOTICE
        if not isinstance(level, int):
           logger.warning('Invalid log level: %s' % module_log_spec)
        else:
            log_level = level

    logger.setLevel(log_level)
    logger.propagate = False

    # Modules may be reloaded (tests): only one handler per logger
    for h in list(logger.handlers):
        if getattr(h, _HANDLER_FLAG, False):
            logger.removeHandler(h)

    ch = logging.StreamHandler()
    ch.setLevel(log_level)
    setattr(ch, _HANDLER_FLAG, True)

    extra_logging = "%(asctime)s - " if debug_mode else ""
    formatter = logging.Formatter("[%%(levelname)s] %s%%(filename)s:%%(lineno)d - %%(message)s" % extra_logging)
    ch.setFormatter(formatter)

    logger.addHandler(ch)
    return logger

import json


def pprint(json_obj):
    return json.dumps(json_obj, indent=4, sort_keys=True, default=str)

def short_ids(ids, max_ids=10):
    """ Render a list of node ids for log lines without flooding them.
    """
    ids = [str(i) for i in ids]
    if len(ids) <= max_ids:
        return "[%s]" % ", ".join(ids)
    return "[%s, ... (+%d)]" % (", ".join(ids[:max_ids]), len(ids) - max_ids)

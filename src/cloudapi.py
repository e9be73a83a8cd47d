""" cloudapi.py

Minimal client of the cloud provider v2 REST API (DigitalOcean flavor).

Only the four operations needed by the control loop are exposed:
    * list_nodes(tag)                  : GET    v2/droplets?tag_name=<tag> (paginated)
    * create_node(spec)                : POST   v2/droplets
    * delete_node(node_id)             : DELETE v2/droplets/<id>
    * put_load_balancer(lb_id, config) : PUT    v2/load_balancers/<id> (whole object replacement)

All calls raise CloudAPIError on network errors or non 2xx answers.
"""
from urllib.parse import urljoin

import misc
import config as Cfg
from errors import CloudAPIError

from aws_xray_sdk.core import xray_recorder

import cslog
log = cslog.logger(__name__)

MAX_PAGES = 50

# Provider names of provider-neutral load balancer payload fields
LB_FIELDS = {"member_ids": "droplet_ids"}

def register_config():
    Cfg.register({
        "cloudapi.url,Stable": {
            "DefaultValue": "https://api.digitalocean.com/",
            "Format"      : "String",
            "Description" : """Base URL of the cloud provider API."""
        },
        "cloudapi.timeout": "seconds=30",
        "cloudapi.page_size": "200"
    })

def bearer(credential):
    credential = credential.strip()
    if credential.lower().startswith("bearer "):
        return credential
    return "Bearer %s" % credential


class CloudAPI:
    def __init__(self, credential, base_url=None, timeout=None, page_size=None, session=None):
        self.base_url  = base_url if base_url is not None else Cfg.get("cloudapi.url")
        self.timeout   = timeout if timeout is not None else Cfg.get_duration_secs("cloudapi.timeout")
        self.page_size = page_size if page_size is not None else Cfg.get_int("cloudapi.page_size")
        self.session   = session if session is not None else misc.Session()
        self.session.headers.update({
            "Authorization": bearer(credential),
            "Content-Type": "application/json"
        })

    def _url(self, path):
        return urljoin(self.base_url if self.base_url.endswith("/") else self.base_url + "/", path)

    def _call(self, method, path_or_url, **kwargs):
        url = path_or_url if path_or_url.startswith("http") else self._url(path_or_url)
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except Exception as e:
            raise CloudAPIError(f"{method} {url} failed: {e}") from e
        if response.status_code >= 400:
            raise CloudAPIError(f"{method} {url} returned HTTP {response.status_code}: {response.text[:512]}",
                    status_code=response.status_code, response_body=response.text)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise CloudAPIError(f"{method} {url} returned a non JSON body!", status_code=response.status_code) from e

    @xray_recorder.capture(name="CloudAPI.list_nodes")
    def list_nodes(self, tag):
        """ Return the raw droplet dicts carrying the tag 'tag', following pagination links.
        """
        nodes = []
        url   = "v2/droplets"
        params = {"tag_name": tag, "per_page": self.page_size}
        for _ in range(MAX_PAGES):
            body = self._call("GET", url, params=params)
            if body.get("id") == "service_unavailable":
                raise CloudAPIError("Cloud API reported 'service_unavailable': %s" % body.get("message", ""))
            if "droplets" not in body:
                raise CloudAPIError("Malformed droplet list answer: %s" % body)
            nodes.extend(body["droplets"])
            next_url = body.get("links", {}).get("pages", {}).get("next")
            if not next_url:
                return nodes
            url    = next_url
            params = None # 'next' link already carries the query string
        log.warning("Stopped droplet pagination after %d pages!" % MAX_PAGES)
        return nodes

    @xray_recorder.capture(name="CloudAPI.create_node")
    def create_node(self, spec):
        body = self._call("POST", "v2/droplets", json=spec)
        if "droplet" not in body:
            raise CloudAPIError("Malformed droplet creation answer: %s" % body)
        return body["droplet"]

    @xray_recorder.capture(name="CloudAPI.delete_node")
    def delete_node(self, node_id):
        self._call("DELETE", "v2/droplets/%s" % node_id)
        return True

    @xray_recorder.capture(name="CloudAPI.put_load_balancer")
    def put_load_balancer(self, lb_id, payload):
        """ Replace the whole load balancer object. 'payload' uses provider-neutral field names ('member_ids').
        """
        body = {LB_FIELDS.get(k, k): v for k, v in payload.items()}
        return self._call("PUT", "v2/load_balancers/%s" % lb_id, json=body)

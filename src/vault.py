""" vault.py

Startup secrets retrieval from a HashiCorp Vault KV (v1) backend.

The Vault token is read from the file pointed by the VAULT_TOKEN environment variable. The secrets are fetched once,
synchronously; any failure is fatal to startup.
"""
import requests

import config as Cfg
from errors import FatalStartupError

from aws_xray_sdk.core import xray_recorder

import cslog
log = cslog.logger(__name__)

REQUIRED_SECRETS = ["cloud_api_key", "service_key"]

def register_config():
    Cfg.register({
        "vault.url,Stable": {
            "DefaultValue": "https://127.0.0.1:8200",
            "Format"      : "String",
            "Description" : """Base URL of the Vault server holding the NodeSquad secrets."""
        },
        "vault.secret_path,Stable": {
            "DefaultValue": "secret/env",
            "Format"      : "String",
            "Description" : """Path of the KV secret containing 'cloud_api_key' and 'service_key'."""
        },
        "vault.timeout": "seconds=10",
        "vault.verify_tls": "1"
    })

def read_token(token_file):
    if token_file is None or token_file == "":
        raise FatalStartupError("VAULT_TOKEN environment variable must point to a Vault token file!")
    try:
        with open(token_file, "r", encoding="utf-8") as f:
            token = f.read().strip()
    except OSError as e:
        raise FatalStartupError(f"Failed to read Vault token file '{token_file}' : {e}") from e
    if token == "":
        raise FatalStartupError(f"Vault token file '{token_file}' is empty!")
    return token

@xray_recorder.capture(name="vault.read_secrets")
def read_secrets(url, token, path, timeout=10, verify=True, session=None):
    """ Return the dict of secrets stored at 'path'.
    """
    s        = session if session is not None else requests.Session()
    endpoint = "%s/v1/%s" % (url.rstrip("/"), path.strip("/"))
    try:
        response = s.get(endpoint, headers={"X-Vault-Token": token}, timeout=timeout, verify=verify)
        response.raise_for_status()
        secrets = response.json()["data"]
    except Exception as e:
        raise FatalStartupError(f"Failed to read secrets from Vault '{endpoint}' : {e}") from e

    if not isinstance(secrets, dict):
        raise FatalStartupError(f"Vault secret '{path}' is not a key/value mapping!")
    missing = [k for k in REQUIRED_SECRETS if not secrets.get(k)]
    if len(missing):
        raise FatalStartupError(f"Vault secret '{path}' is missing required keys: {missing}")
    log.info(f"Read {len(secrets)} secret(s) from Vault path '{path}'.")
    return secrets

def fetch_secrets(ctx, session=None):
    token = read_token(ctx.get("VAULT_TOKEN"))
    return read_secrets(Cfg.get("vault.url"), token, Cfg.get("vault.secret_path"),
            timeout=Cfg.get_duration_secs("vault.timeout"),
            verify=Cfg.get_bool("vault.verify_tls"),
            session=session)

"""Opaque instance ids for (deployment group, vm name) pairs.

The id is the URL-safe base64 form of a small JSON document, so either
component may contain any character without breaking the round trip.
"""

import base64
import binascii
import json
import re
from dataclasses import dataclass
from pathlib import Path

from vm_manager.errors import GuestConfigParseError, MalformedIdentity


SHARED_CONFIG_FILE = "SharedConfig.xml"

_SERVICE_RE = re.compile(
    r'<Service name="(?P<value>[^"]*)" guid="\{[-0-9a-fA-F]+\}"\s*/>'
)
_INCARNATION_RE = re.compile(
    r'<Incarnation number="\d*" instance="(?P<value>[^"]*)" guid="\{[-0-9a-fA-F]+\}"\s*/>'
)


@dataclass(frozen=True)
class InstanceIdentity:
    deployment_group: str
    vm_name: str


def encode(deployment_group: str, vm_name: str) -> str:
    if not deployment_group or not vm_name:
        raise MalformedIdentity(
            instance_id=f"{deployment_group}/{vm_name}",
            detail="deployment group and vm name must be non-empty",
        )
    document = json.dumps(
        {"deployment_group": deployment_group, "vm_name": vm_name},
        sort_keys=True,
        separators=(",", ":"),
    )
    return base64.urlsafe_b64encode(document.encode("utf-8")).decode("ascii")


def decode(instance_id: str) -> InstanceIdentity:
    try:
        raw = base64.urlsafe_b64decode(instance_id.encode("ascii"))
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeError, binascii.Error, ValueError) as exc:
        raise MalformedIdentity(
            instance_id=instance_id, detail="not an encoded instance id"
        ) from exc
    if not isinstance(payload, dict) or set(payload) != {
        "deployment_group",
        "vm_name",
    }:
        raise MalformedIdentity(
            instance_id=instance_id, detail="unexpected instance id payload"
        )
    group = payload["deployment_group"]
    name = payload["vm_name"]
    if not isinstance(group, str) or not isinstance(name, str) or not group or not name:
        raise MalformedIdentity(
            instance_id=instance_id, detail="instance id components must be strings"
        )
    if encode(group, name) != instance_id:
        raise MalformedIdentity(
            instance_id=instance_id, detail="instance id is not in canonical form"
        )
    return InstanceIdentity(deployment_group=group, vm_name=name)


def extract_from_guest_config(contents: str) -> str:
    service = _SERVICE_RE.search(contents)
    if not service:
        raise GuestConfigParseError(
            field="Service name", detail="pattern not found in guest config"
        )
    incarnation = _INCARNATION_RE.search(contents)
    if not incarnation:
        raise GuestConfigParseError(
            field="Incarnation instance", detail="pattern not found in guest config"
        )
    return encode(service.group("value"), incarnation.group("value"))


def read_instance_id(agent_lib_path: str) -> str:
    path = Path(agent_lib_path) / SHARED_CONFIG_FILE
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise GuestConfigParseError(field=str(path), detail=str(exc)) from exc
    return extract_from_guest_config(contents)

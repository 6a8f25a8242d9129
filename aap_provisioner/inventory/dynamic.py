#!/usr/bin/env python3
"""
Dynamic inventory script for Ansible.
- Reads provisioned instances from the outputs file written by `apply`.
- Puts every instance under [all] and [aap_provisioned] with its public IP as ansible_host.
- Lets the same hosts be targeted from a plain ansible-playbook run, outside AAP.
"""

import json
import os
import sys

from ..core.config import settings

GROUP_NAME = "aap_provisioned"


def empty_inventory() -> dict:
    return {
        "_meta": {"hostvars": {}},
        "all": {"hosts": []},
        GROUP_NAME: {"hosts": []},
    }


def get_inventory(outputs_file: str, ansible_user: str) -> dict:
    if not os.path.exists(outputs_file):
        raise FileNotFoundError(
            f"Outputs file not found: {outputs_file}. Run `aap-provisioner apply` first."
        )

    with open(outputs_file, "r", encoding="utf-8") as f:
        outputs = json.load(f)

    # Outputs are stored as {"name": {"value": ...}} like `terraform output -json`
    instances = outputs.get("instances", {}).get("value", [])

    inventory = empty_inventory()
    for instance in instances:
        public_ip = instance.get("public_ip")
        if not public_ip:
            continue

        name = instance["name"]
        inventory["all"]["hosts"].append(name)
        inventory[GROUP_NAME]["hosts"].append(name)
        inventory["_meta"]["hostvars"][name] = {
            "ansible_host": public_ip,
            "ansible_user": ansible_user,
            "instance_id": instance.get("instance_id"),
            "aap_host_id": instance.get("host_id"),
        }

    return inventory


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv if argv is None else argv
    if len(argv) == 2 and argv[1] == "--list":
        try:
            inventory = get_inventory(settings.outputs_file, settings.ansible_user)
        except FileNotFoundError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print(json.dumps(inventory, indent=2))
    elif len(argv) == 3 and argv[1] == "--host":
        # We already store everything in _meta
        print(json.dumps({}))
    else:
        print(f"Usage: {argv[0]} --list or --host <hostname>", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
Text printed by ``s2i usage`` for this builder image.
"""
import os
from typing import Optional, TextIO

USAGE = """\
This is a S2I builder image for running Ansible playbooks.

To build an image with your playbooks:

    s2i build <source code path/URL> {image} <application image>

To run the playbook:

    docker run -e PLAYBOOK_FILE=<playbook> [-e VAR=value ...] <application image>

Environment variables:
    PLAYBOOK_FILE                   playbook to run, relative to WORK_DIR
    INVENTORY_FILE                  inventory file to use
    INVENTORY_URL                   URL to download the inventory from
    DYNAMIC_SCRIPT_URL              URL of a dynamic inventory script
    ALLOW_ANSIBLE_CONNECTION_LOCAL  set to "false" to drop ansible_connection=local
                                    from the inventory
    VAULT_PASS                      vault password
    WORK_DIR                        directory to run ansible-playbook from
                                    (default: APP_HOME)
    OPTS                            extra options for ansible-playbook

INVENTORY_FILE wins over INVENTORY_URL, which wins over DYNAMIC_SCRIPT_URL.
"""


def usage_text(image_name: Optional[str] = None) -> str:
    image = image_name or os.environ.get("IMAGE_NAME") or "<builder image>"
    return USAGE.format(image=image)


def print_usage(image_name: Optional[str] = None, stream: Optional[TextIO] = None) -> None:
    print(usage_text(image_name), file=stream, end="")

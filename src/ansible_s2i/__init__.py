"""
Source-to-image builder glue for running Ansible playbooks in a container.
"""
__version__ = "0.1.0"

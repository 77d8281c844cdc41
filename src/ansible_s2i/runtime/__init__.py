"""
S2I scripts that run inside the builder image.

Provides the assemble/save-artifacts steps used at build time, the usage text,
and the run script that prepares inventory and vault files before handing the
process over to ansible-playbook.
"""

"""Provisioning primitives: key generation, SSH sessions, provider gateways, tunnels.

Import from the submodules directly; several of them depend on
``clawcontrol.config``, which itself imports ``provisioning.keys``.
"""

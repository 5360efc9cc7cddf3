# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""EcoPulse - trust and integrity engine for citizen-science observations.

Contributors submit wildlife sightings; the engine decides what may be
disclosed about where and when, flags conflicting submissions, routes
observations through peer and expert verification, settles disputes by
community vote, and keeps an auditable credibility score per contributor.

Layers:
  core    - domain components, persistence and the TrustEngine facade
  server  - Starlette HTTP surface and the ``ecopulse`` admin CLI
"""

__version__ = "0.1.0"

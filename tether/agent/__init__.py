# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Session agent that runs on the remote host.

Hosts PTY-backed shell sessions behind a small HTTP control surface and a
per-session WebSocket stream. Started by the deployer as
``python -m tether.agent``.
"""

# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""tether - remote shell sessions over SSH with a self-deploying session agent."""

__version__ = "0.1.0"

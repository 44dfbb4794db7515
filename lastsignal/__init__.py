# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
"""LastSignal check-in core: lifecycle, scheduler, tokens and trusted contacts."""

__version__ = "0.1.0"

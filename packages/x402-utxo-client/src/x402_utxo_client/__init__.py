# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from .facilitator import FacilitatorClient
from .payer import build_signed_payment

__all__ = [
    "FacilitatorClient",
    "build_signed_payment",
]

# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Machine-readable reason codes returned to resource servers."""

from __future__ import annotations

from enum import Enum


class InvalidReason(str, Enum):
    # protocol mismatch
    invalid_network = "invalid_network"
    invalid_scheme = "invalid_scheme"
    invalid_x402_version = "invalid_x402_version"
    # malformed input
    invalid_payload = "invalid_payload"
    # authentication
    invalid_signature = "invalid_signature"
    # time window
    authorization_expired = "authorization_expired"
    authorization_not_yet_valid = "authorization_not_yet_valid"
    # economic
    authorization_value_too_low = "authorization_value_too_low"
    invalid_exact_payload_authorization_value = "invalid_exact_payload_authorization_value"
    insufficient_funds = "insufficient_funds"
    # identity
    recipient_mismatch = "recipient_mismatch"
    payer_mismatch = "payer_mismatch"
    # funding object
    utxo_not_spendable = "utxo_not_spendable"
    utxo_output_not_found = "utxo_output_not_found"
    insufficient_confirmations = "insufficient_confirmations"
    invalid_utxo_value = "invalid_utxo_value"
    utxo_previous_spend_detected = "utxo_previous_spend_detected"
    insufficient_utxo_balance = "insufficient_utxo_balance"
    # settlement
    invalid_transaction_state = "invalid_transaction_state"
    settlement_outcome_unknown = "settlement_outcome_unknown"
    # infrastructure
    utxo_validation_failed = "utxo_validation_failed"
    unexpected_utxo_validation_error = "unexpected_utxo_validation_error"
    unexpected_verify_error = "unexpected_verify_error"
    unexpected_settle_error = "unexpected_settle_error"

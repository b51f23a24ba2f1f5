"""Escrow services: payment verification, refunds and settlement."""

"""Instruction building, fee pricing, signing and submission."""

"""
Strategy
========
Pure decision functions: deployment sizing, claims, staking, EV.
"""

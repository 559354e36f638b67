"""
AI Advisory Module

Model-backed opinions on entries and exits. The advisor can only
propose: risk validation and the exit criteria stay the hard authority,
and every failure degrades to a PASS opinion.
"""

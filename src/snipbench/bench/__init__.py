"""Measurement subsystem for snipbench.

Instruments snippets into self-timing scripts, runs them in configured
interpreter environments, calibrates iteration counts, and computes
outlier-aware statistics over the collected results.
"""

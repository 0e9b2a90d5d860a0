"""
License Ledger Service for DP Biotech devices

This service tracks which features are unlocked on each hardware serial,
keeps the ledger in memory for fast lookups and mirrors it to a CSV file
in a GitHub repository so that activations survive restarts.
"""

__version__ = "1.0.0"

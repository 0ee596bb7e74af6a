"""
Operator tools for TierArchive.
"""

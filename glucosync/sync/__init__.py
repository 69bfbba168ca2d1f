"""Sync infrastructure for GlucoSync.
"""

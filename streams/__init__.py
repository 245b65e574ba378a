"""
Change-feed consumers that forward ledger events downstream.
"""

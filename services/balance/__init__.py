"""Stored balance ledger and QRIS top-ups"""

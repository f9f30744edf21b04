"""Referral domain - code rules, validation, usage ledger and code administration"""

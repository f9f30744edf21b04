"""Telecare booking core - referrals, pricing, appointments and payment reconciliation"""

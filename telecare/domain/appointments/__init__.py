"""Appointment domain - pricing snapshot, booking and the status state machine"""

"""Analytics domain - platform-wide aggregates for the admin dashboard"""

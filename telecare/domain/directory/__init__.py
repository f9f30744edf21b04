"""Directory domain - user lookups and admin approval of doctors and agents"""

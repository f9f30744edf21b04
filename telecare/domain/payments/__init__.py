"""Payment domain - gateway adapters, reconciliation and refunds"""

"""Billing module.

Plans, proration, add-ons, usage limits, subscription state, refunds and
the recurring billing job.
"""

"""Payment gateway module.

PortOne API client, inbound webhook verification and parsing, the webhook
event log and the settlement and payout mirrors.
"""

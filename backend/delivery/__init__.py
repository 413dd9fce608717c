"""
Event delivery for the ATP live events services.
Validates detected events and dispatches them to the structured log and a signed webhook.
"""

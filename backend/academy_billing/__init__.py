"""Academy subscription billing and payment-webhook engine."""

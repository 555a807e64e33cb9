"""Framework integrations for cqrs-ddd-otp-step."""

"""REST API for the cooperative's program booking and payment flow."""

"""Request/response models of the REST layer.

Domain models live in coop_booking.models; these wrap them for HTTP.
"""

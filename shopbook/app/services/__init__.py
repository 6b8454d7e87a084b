"""Service layer of the booking engine.

Each module owns one concern: shop calendars, the slot index, the booking
lifecycle and ratings. Callers import the module they need directly.
"""

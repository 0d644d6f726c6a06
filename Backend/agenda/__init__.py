"""
Appointment availability and subscription-credit booking engine for
multi-tenant barbershops.
"""

"""HTTP surface and service wiring for the referral payments backend."""

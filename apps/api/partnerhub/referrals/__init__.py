from partnerhub.referrals.models import Client, Prospect

__all__ = [
    "Client",
    "Prospect",
]

"""
Puppet Matrix id generation.
"""
import uuid


class VirtualIdentityAllocator:
    """Generates Matrix ids for puppets without a store round trip.

    Uniqueness comes from the 122 random bits of a uuid4 suffix.
    """

    def allocate(self, localpart_prefix: str, domain: str) -> str:
        return f"@{localpart_prefix}_{uuid.uuid4().hex}:{domain}"

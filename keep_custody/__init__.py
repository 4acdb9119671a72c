"""Keep Custody — quorum-signed group-custody authorization unit."""

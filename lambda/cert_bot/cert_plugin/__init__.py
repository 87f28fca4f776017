"""Issue and renew CloudFront server certificates in the China regions."""

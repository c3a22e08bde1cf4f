"""Store media uploads in Cloudflare R2 or any S3-compatible bucket."""

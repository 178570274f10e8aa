"""Firefox support: RDP client, profiles and launcher."""

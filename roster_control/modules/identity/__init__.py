"""Identity links between Discord accounts and game accounts."""

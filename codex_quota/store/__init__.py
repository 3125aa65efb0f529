"""On-disk credential containers and foreign auth stores."""

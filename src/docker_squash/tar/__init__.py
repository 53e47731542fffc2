"""Docker save archive handling: layer archives, metadata and tags."""

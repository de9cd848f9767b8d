"""Identity stitching, bridge, touchpoint, funnel and merge services."""

"""Triple-Helix stitch sequencing and tube cycling engine."""

"""First-boot configuration generation."""

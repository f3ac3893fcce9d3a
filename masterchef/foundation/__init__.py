"""Domain-free building blocks shared by masterchef services."""

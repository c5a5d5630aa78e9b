"""Domain services (framework-free; take a Session and an actor)."""

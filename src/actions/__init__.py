"""Side-effecting agent actions: validation, handlers and collaborator clients."""

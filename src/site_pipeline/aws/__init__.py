"""AWS stack synthesis, deployment and client management."""

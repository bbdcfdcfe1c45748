"""Character chat router: routes transport messages to stateful AI character sessions."""

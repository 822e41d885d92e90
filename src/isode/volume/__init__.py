"""Files bind-mounted read-only into every sandbox."""

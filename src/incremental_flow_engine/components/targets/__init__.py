"""Built-in storage targets."""

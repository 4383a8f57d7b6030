"""Code shared by the control and worker processes."""

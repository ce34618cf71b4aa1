"""Console presentation helpers shared by sinktrace commands."""

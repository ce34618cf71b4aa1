"""Click commands registered on the ``sinktrace`` group."""

"""Block device inventory, safety and format pipeline."""

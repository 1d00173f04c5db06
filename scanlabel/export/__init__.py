"""Export modules for scanlabel record stores."""

from scanlabel.export.text import export_to_dir, export_training_data

__all__ = ["export_to_dir", "export_training_data"]

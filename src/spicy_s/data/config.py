"""
config.py - Configuration and exceptions for spicy_s

Contains:
- SpicyConfig: Column names and analysis defaults
- SpicyError: Exception hierarchy
"""

from dataclasses import dataclass


@dataclass
class SpicyConfig:
    """Configuration for spicy_s column names and settings."""

    # Column names
    x_col: str = "x"
    y_col: str = "y"
    cell_type_col: str = "cellType"
    image_col: str = "imageID"

    # Point pattern settings
    n_radii: int = 513  # radii evaluated per cross-L curve
    min_edge_fraction: float = 0.01  # floor for isotropic edge weights

    # Model settings
    min_images: int = 3  # fewer non-missing images -> no fit for the pair
    alpha: float = 0.05

    # Parallel settings
    n_jobs: int = 1

    def get_coordinate_columns(self) -> tuple[str, str]:
        """
        Get x, y column names.

        Returns
        -------
        Tuple[str, str]
            (x_column, y_column)
        """
        return self.x_col, self.y_col

    def required_cell_columns(self) -> list[str]:
        """Columns every cell table must contain."""
        return [self.x_col, self.y_col, self.cell_type_col, self.image_col]


class SpicyError(Exception):
    """Base exception for spicy_s errors."""

    pass


class ValidationError(SpicyError):
    """Raised when input validation fails."""

    pass


class ColumnNotFoundError(ValidationError):
    """Raised when a required column is missing."""

    def __init__(self, column: str, table_name: str):
        self.column = column
        self.table_name = table_name
        super().__init__(f"Column '{column}' not found in {table_name}")

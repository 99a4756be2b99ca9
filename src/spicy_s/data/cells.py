"""
cells.py - Immutable cell table + per-image phenotype container

CellData is the input to spicy(). It holds one row per cell
(coordinates, cell type, image id) and, optionally, one row per image
(subject, condition, covariates).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from .config import ColumnNotFoundError, SpicyConfig, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class CellData:
    """
    Segmented cells across many images.

    Attributes
    ----------
    cells : pd.DataFrame
        One row per cell with x, y, cell type and image id columns
        (names from ``config``).
    phenotype : pd.DataFrame or None
        One row per image, indexed by image id.
    config : SpicyConfig
        Column names and analysis defaults.
    """

    cells: pd.DataFrame
    phenotype: pd.DataFrame | None = None
    config: SpicyConfig = field(default_factory=SpicyConfig)

    def __post_init__(self):
        cfg = self.config
        missing = [c for c in cfg.required_cell_columns() if c not in self.cells.columns]
        if missing:
            raise ColumnNotFoundError(missing[0], "cell table")

        cells = self.cells.reset_index(drop=True).copy()
        cells[cfg.image_col] = cells[cfg.image_col].astype(str)
        cells[cfg.cell_type_col] = cells[cfg.cell_type_col].astype(str)
        for col in cfg.get_coordinate_columns():
            cells[col] = pd.to_numeric(cells[col], errors="raise").astype(float)
        object.__setattr__(self, "cells", cells)

        if self.phenotype is not None:
            object.__setattr__(self, "phenotype", self._prepare_phenotype(self.phenotype))

    def _prepare_phenotype(self, phenotype: pd.DataFrame) -> pd.DataFrame:
        """Index phenotype by image id and check every image resolves once."""
        image_col = self.config.image_col
        pheno = phenotype.copy()
        if image_col in pheno.columns:
            pheno = pheno.set_index(image_col)
        pheno.index = pheno.index.astype(str)
        pheno.index.name = image_col

        dup = pheno.index[pheno.index.duplicated()].unique()
        if len(dup) > 0:
            raise ValidationError(f"Phenotype has duplicated image ids: {list(dup)}")

        missing = [i for i in self.image_ids() if i not in pheno.index]
        if missing:
            raise ValidationError(f"{len(missing)} images have no phenotype row: {missing[:5]}")

        extra = pheno.index.difference(pd.Index(self.image_ids()))
        if len(extra) > 0:
            logger.warning(f"{len(extra)} phenotype rows have no cells and are ignored")

        return pheno.loc[self.image_ids()]

    # ========== Accessors ==========

    def image_ids(self) -> list[str]:
        """Image ids in order of first appearance."""
        return list(pd.unique(self.cells[self.config.image_col]))

    def cell_types(self) -> list[str]:
        """Cell types in order of first appearance."""
        return list(pd.unique(self.cells[self.config.cell_type_col]))

    @property
    def n_cells(self) -> int:
        return len(self.cells)

    @property
    def n_images(self) -> int:
        return len(self.image_ids())

    def get_spatial_coords(self, image_id: str | None = None) -> np.ndarray:
        """
        Get (n, 2) coordinate array, optionally for a single image.
        """
        df = self.cells if image_id is None else self.cells_in_image(image_id)
        return df[list(self.config.get_coordinate_columns())].to_numpy()

    def get_cell_types(self, image_id: str | None = None) -> np.ndarray:
        df = self.cells if image_id is None else self.cells_in_image(image_id)
        return df[self.config.cell_type_col].to_numpy()

    def cells_in_image(self, image_id: str) -> pd.DataFrame:
        """Cell rows belonging to one image."""
        return self.cells[self.cells[self.config.image_col] == image_id]

    def split_by_image(self) -> dict[str, pd.DataFrame]:
        """Map image id -> cell rows, in image order."""
        groups = dict(tuple(self.cells.groupby(self.config.image_col, sort=False)))
        return {i: groups[i] for i in self.image_ids()}

    def cell_counts(self) -> pd.DataFrame:
        """
        Images x cell types table of cell counts.

        Types absent from an image get 0.
        """
        cfg = self.config
        counts = pd.crosstab(self.cells[cfg.image_col], self.cells[cfg.cell_type_col])
        return counts.reindex(index=self.image_ids(), columns=self.cell_types(), fill_value=0)

    def get_phenotype(self, columns: list[str] | str | None = None) -> pd.DataFrame:
        """
        Per-image phenotype, rows aligned to image_ids().

        Parameters
        ----------
        columns : str or list of str, optional
            Columns to return. All columns if None.

        Raises
        ------
        ValidationError
            If no phenotype table is attached.
        ColumnNotFoundError
            If a requested column is absent.
        """
        if self.phenotype is None:
            raise ValidationError("No phenotype table attached to CellData")
        if columns is None:
            return self.phenotype.copy()
        if isinstance(columns, str):
            columns = [columns]
        for col in columns:
            if col not in self.phenotype.columns:
                raise ColumnNotFoundError(col, "phenotype")
        return self.phenotype[list(columns)].copy()

    def subset_by_images(self, image_ids: list[str]) -> CellData:
        """New CellData restricted to the given images."""
        image_ids = [str(i) for i in image_ids]
        mask = self.cells[self.config.image_col].isin(image_ids)
        pheno = None if self.phenotype is None else self.phenotype.loc[
            [i for i in self.phenotype.index if i in set(image_ids)]
        ]
        return CellData(cells=self.cells[mask], phenotype=pheno, config=self.config)

    # ========== Construction ==========

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        phenotype_cols: list[str] | None = None,
        config: SpicyConfig | None = None,
    ) -> CellData:
        """
        Build from a single per-cell table.

        Phenotype columns (subject, condition, covariates) stored per
        cell are collapsed to one row per image; they must be constant
        within each image.

        Parameters
        ----------
        df : pd.DataFrame
            Per-cell table.
        phenotype_cols : list of str, optional
            Per-image columns to lift into the phenotype table.
        config : SpicyConfig, optional
            Column names. Defaults to SpicyConfig().
        """
        config = config or SpicyConfig()
        if not phenotype_cols:
            return cls(cells=df, config=config)

        for col in phenotype_cols:
            if col not in df.columns:
                raise ColumnNotFoundError(col, "cell table")

        image_col = config.image_col
        keyed = df.assign(**{image_col: df[image_col].astype(str)})
        grouped = keyed.groupby(image_col, sort=False)[phenotype_cols]
        n_unique = grouped.nunique(dropna=False)
        varying = n_unique.columns[(n_unique > 1).any()].tolist()
        if varying:
            raise ValidationError(f"Phenotype columns vary within an image: {varying}")

        phenotype = grouped.first()
        cells = keyed.drop(columns=phenotype_cols)
        return cls(cells=cells, phenotype=phenotype, config=config)

    # ========== Summary ==========

    def summary(self) -> dict:
        return {
            "n_cells": self.n_cells,
            "n_images": self.n_images,
            "n_cell_types": len(self.cell_types()),
            "phenotype_columns": [] if self.phenotype is None else list(self.phenotype.columns),
        }

    def __repr__(self) -> str:
        s = self.summary()
        return (
            f"CellData(n_cells={s['n_cells']}, n_images={s['n_images']}, "
            f"n_cell_types={s['n_cell_types']}, phenotype={s['phenotype_columns']})"
        )

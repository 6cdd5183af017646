"""The recipe.yaml record identifying a staged installer."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fab_installer.errors import ConfigurationError
from fab_installer.types import NodeKind

RECIPE_FILE = "recipe.yaml"


class RecipeError(ConfigurationError):
    """Raised when recipe.yaml is missing or invalid."""

    def __init__(self, message: str, code: str = "invalid_recipe") -> None:
        super().__init__(message, code=code)


class Recipe(BaseModel):
    """Kind and name of the target a staged tree installs."""

    model_config = ConfigDict(extra="forbid")

    type: NodeKind
    name: str = Field(min_length=1)


def save_recipe(install_dir: Path, recipe: Recipe) -> Path:
    """Write recipe.yaml into a staged tree.

    Returns:
        Path of the written file.
    """
    path = install_dir / RECIPE_FILE
    data = recipe.model_dump(mode="json")
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)
    return path


def load_recipe(install_dir: Path) -> Recipe:
    """Read recipe.yaml from a staged tree.

    Raises:
        RecipeError: If the file is missing or invalid.
    """
    path = install_dir / RECIPE_FILE
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise RecipeError(f"{path} does not exist", code="not_found") from None
    except yaml.YAMLError as e:
        raise RecipeError(f"{path}: invalid YAML: {e}") from e

    try:
        return Recipe.model_validate(data)
    except ValidationError as e:
        raise RecipeError(f"{path}: {e}") from e


__all__ = ["RECIPE_FILE", "Recipe", "RecipeError", "load_recipe", "save_recipe"]

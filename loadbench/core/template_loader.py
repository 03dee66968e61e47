"""
Load Test Template Loader

This module loads YAML load test definitions and converts them into validated
options plus the workload, setup and teardown callables they reference.

A definition file looks like::

    name: spike
    description: Sudden massive load
    category: SPIKE
    workload: loadbench.workloads.contacts:average_user_workflow
    setup: loadbench.workloads.contacts:setup
    stages:
      - {duration: 1m, target: 5}
      - {duration: 30s, target: 200}
    thresholds:
      http_req_duration: ["p(95)<15000"]

Multi-scenario files bind each scenario's ``exec`` name through a
``workloads`` mapping instead of a single ``workload``.
"""

import importlib
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from loadbench.config import settings
from loadbench.core.workload import WorkloadFn
from loadbench.exceptions import ConfigurationError
from loadbench.models import LoadTestOptions

BUNDLED_TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

# Keys describing the file itself rather than the run.
_DEFINITION_KEYS = ("description", "category", "workload", "workloads", "setup", "teardown")


class TemplateMetadata(BaseModel):
    """Metadata about a load test template"""

    name: str
    description: str
    category: str
    file_path: str


class LoadTestDefinition(BaseModel):
    """Options plus the ``module:attr`` references a run needs."""

    options: LoadTestOptions
    description: str = ""
    category: str = "GENERAL"
    workload: Optional[str] = None
    workloads: Dict[str, str] = Field(default_factory=dict)
    setup: Optional[str] = None
    teardown: Optional[str] = None
    source: Optional[str] = None

    def resolve_workloads(
        self, override: Optional[str] = None
    ) -> Union[WorkloadFn, Dict[str, WorkloadFn]]:
        """
        Import the workload callables.

        Args:
            override: Reference used for every scenario instead of the file's

        Returns:
            One callable, or a mapping from exec names to callables
        """
        if override:
            return resolve_reference(override)
        if self.workloads:
            return {name: resolve_reference(ref) for name, ref in self.workloads.items()}
        if self.workload:
            return resolve_reference(self.workload)
        raise ConfigurationError(
            f"{self.source or self.options.name}: no workload given "
            "(set 'workload' or 'workloads', or pass --workload)"
        )

    def resolve_setup(self) -> Optional[Callable[..., Any]]:
        return resolve_reference(self.setup) if self.setup else None

    def resolve_teardown(self) -> Optional[Callable[..., Any]]:
        return resolve_reference(self.teardown) if self.teardown else None


def resolve_reference(ref: str) -> Any:
    """
    Import ``package.module:attr`` (dotted attribute paths allowed).

    Raises:
        ConfigurationError: if the module or attribute cannot be found
    """
    module_name, sep, attr_path = str(ref).partition(":")
    if not sep or not module_name or not attr_path:
        raise ConfigurationError(f"Invalid reference {ref!r}; expected 'module:attr'")
    try:
        obj: Any = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import {module_name!r}: {e}") from e
    for part in attr_path.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError as e:
            raise ConfigurationError(f"{module_name!r} has no attribute {attr_path!r}") from e
    return obj


def parse_definition(data: Mapping[str, Any], source: Optional[str] = None) -> LoadTestDefinition:
    """
    Validate a raw definition mapping.

    Raises:
        ConfigurationError: if the options do not validate
    """
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"{source or 'definition'}: expected a mapping at top level")
    meta = {k: data[k] for k in _DEFINITION_KEYS if k in data}
    raw_options = {k: v for k, v in data.items() if k not in _DEFINITION_KEYS}
    if "name" not in raw_options and source:
        raw_options["name"] = Path(source).stem
    try:
        options = LoadTestOptions.model_validate(raw_options)
        return LoadTestDefinition(options=options, source=source, **meta)
    except ValidationError as e:
        raise ConfigurationError(f"{source or 'definition'}: {e}") from e


class TemplateLoader:
    """
    Loads YAML load test definitions.

    Bundled templates live in ``loadbench/templates``; ``settings.TEMPLATES_DIR``
    is searched first so a project can shadow or extend them.
    """

    def __init__(self, templates_dirs: Optional[List[Path]] = None):
        if templates_dirs is None:
            templates_dirs = []
            if settings.TEMPLATES_DIR is not None:
                templates_dirs.append(Path(settings.TEMPLATES_DIR))
            templates_dirs.append(BUNDLED_TEMPLATES_DIR)

        self.templates_dirs = [Path(d) for d in templates_dirs]
        self._templates_cache: Dict[str, Dict[str, Any]] = {}

    def list_templates(self) -> List[TemplateMetadata]:
        """
        List all available templates.

        Returns:
            List of template metadata, first directory wins on name clashes
        """
        templates: Dict[str, TemplateMetadata] = {}

        for templates_dir in self.templates_dirs:
            if not templates_dir.exists():
                continue
            for template_file in sorted(templates_dir.glob("*.yaml")):
                if template_file.stem in templates:
                    continue
                try:
                    data = _read_yaml(template_file)
                except ConfigurationError:
                    continue
                templates[template_file.stem] = TemplateMetadata(
                    name=template_file.stem,
                    description=str(data.get("description", "")).strip(),
                    category=str(data.get("category", "GENERAL")),
                    file_path=str(template_file),
                )

        return sorted(templates.values(), key=lambda t: t.name)

    def find(self, template_name: str) -> Path:
        for templates_dir in self.templates_dirs:
            template_file = templates_dir / f"{template_name}.yaml"
            if template_file.exists():
                return template_file
        raise ConfigurationError(f"Template not found: {template_name}")

    def load_template(self, template_name: str) -> Dict[str, Any]:
        """
        Load a template's raw data by name.

        Args:
            template_name: Name of the template file (without .yaml extension)

        Returns:
            Dict with template configuration
        """
        if template_name in self._templates_cache:
            return self._templates_cache[template_name]

        data = _read_yaml(self.find(template_name))
        self._templates_cache[template_name] = data
        return data

    def load_definition(self, path_or_name: Union[str, Path]) -> LoadTestDefinition:
        """
        Load a definition from a YAML path, or a template by name.
        """
        path = Path(path_or_name)
        if path.suffix in (".yaml", ".yml") or path.exists():
            return parse_definition(_read_yaml(path), source=str(path))
        name = str(path_or_name)
        return parse_definition(self.load_template(name), source=str(self.find(name)))


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Options file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected a mapping at top level")
    return data


def load_definition(path_or_name: Union[str, Path]) -> LoadTestDefinition:
    return TemplateLoader().load_definition(path_or_name)


def load_options(path_or_name: Union[str, Path]) -> LoadTestOptions:
    """Read a YAML file (or bundled template) into validated options."""
    return load_definition(path_or_name).options

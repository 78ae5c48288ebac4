"""Structural validation of recipes: duplicate names, dependencies, cycles."""

from dataclasses import dataclass
from dataclasses import field

from .errors import CircularDependencyError
from .errors import RecipeValidationError
from .models import Recipe
from .models import Step


@dataclass
class ValidationResult:
    """Outcome of validating a recipe."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    cycle: list[str] | None = None

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        """Raise the matching error type if validation failed."""
        if self.cycle:
            raise CircularDependencyError(self.cycle)
        if self.errors:
            raise RecipeValidationError(self.errors)


def find_duplicate_names(steps: list[Step]) -> list[str]:
    """Return step names that appear more than once, in first-seen order."""
    seen: set[str] = set()
    duplicates: list[str] = []
    for step in steps:
        if step.name in seen and step.name not in duplicates:
            duplicates.append(step.name)
        seen.add(step.name)
    return duplicates


def find_unknown_dependencies(steps: list[Step]) -> list[tuple[str, str]]:
    """Return ``(step, dependency)`` pairs where the dependency names no step."""
    names = {step.name for step in steps}
    return [(step.name, dep) for step in steps for dep in step.depends_on if dep not in names]


def find_cycle(steps: list[Step]) -> list[str] | None:
    """Find one dependency cycle, if any.

    Depth-first search over ``depends_on`` edges. Returns the cycle as a list
    of names with the starting name repeated at the end, e.g. ``["a", "b", "a"]``.
    Unknown dependencies are ignored here.
    """
    graph = {step.name: step.depends_on for step in steps}
    visited: set[str] = set()
    visiting: list[str] = []

    def visit(name: str) -> list[str] | None:
        if name in visiting:
            return visiting[visiting.index(name):] + [name]
        if name in visited or name not in graph:
            return None
        visiting.append(name)
        for dep in graph[name]:
            cycle = visit(dep)
            if cycle:
                return cycle
        visiting.pop()
        visited.add(name)
        return None

    for step in steps:
        cycle = visit(step.name)
        if cycle:
            return cycle
    return None


def topological_order(steps: list[Step]) -> list[str]:
    """Return step names in an order where every dependency comes first.

    Ties keep declaration order. Assumes the graph has already been validated.
    """
    remaining = {step.name: set(step.depends_on) for step in steps}
    order: list[str] = []
    while remaining:
        ready = [step.name for step in steps if step.name in remaining and not remaining[step.name]]
        if not ready:
            raise CircularDependencyError(find_cycle(steps) or sorted(remaining))
        for name in ready:
            order.append(name)
            del remaining[name]
        for deps in remaining.values():
            deps.difference_update(ready)
    return order


def validate_recipe(recipe: Recipe) -> ValidationResult:
    """Validate a recipe before any step runs.

    Collects field errors, duplicate step names, unknown dependencies and
    dependency cycles. Warnings flag constructs that are legal but likely
    mistakes.
    """
    result = ValidationResult()
    result.errors.extend(recipe.validate())

    duplicates = find_duplicate_names(recipe.steps)
    if duplicates:
        result.errors.append(f"Duplicate step names: {', '.join(duplicates)}")

    for step_name, dep in find_unknown_dependencies(recipe.steps):
        result.errors.append(f"Step '{step_name}': depends_on references unknown step '{dep}'")

    cycle = find_cycle(recipe.steps)
    if cycle and len(cycle) > 2:
        # Self-dependency is already reported by Step.validate
        result.cycle = cycle
        result.errors.append(f"Circular dependency detected: {' -> '.join(cycle)}")

    outputs: dict[str, str] = {}
    for step in recipe.steps:
        if step.output:
            if step.output in outputs:
                result.warnings.append(
                    f"Steps '{outputs[step.output]}' and '{step.name}' both write output '{step.output}'"
                )
            outputs[step.output] = step.name
        if step.tool == "ai" and step.guardrails and step.guardrails.max_retries == 0 and step.retries == 0:
            result.warnings.append(f"Step '{step.name}': AI step has no retries configured")

    return result

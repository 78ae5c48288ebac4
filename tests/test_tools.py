"""Tests for the built-in tools, run through the engine."""

import sys

import pytest

from codegen_recipes.ai.config import BudgetConfig
from codegen_recipes.ai.config import ContextConfig
from codegen_recipes.ai.config import GuardrailConfig
from codegen_recipes.config import EngineConfig
from codegen_recipes.engine import RecipeEngine
from codegen_recipes.models import Recipe
from codegen_recipes.models import RecursionConfig
from codegen_recipes.models import Step
from codegen_recipes.output import FileOutput
from codegen_recipes.output import MemoryFileWriter
from codegen_recipes.registry import create_default_registry
from codegen_recipes.results import RecipeStatus
from codegen_recipes.results import StepStatus

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="Uses POSIX shell utilities")


def recipe(*steps: Step, **kwargs) -> Recipe:
    return Recipe(name="tools-test", steps=list(steps), **kwargs)


@posix_only
class TestShellTool:
    @pytest.mark.asyncio
    async def test_json_stdout_parsed(self, temp_dir):
        engine = RecipeEngine()
        result = await engine.run(
            recipe(Step(name="detect", tool="shell", command="""echo '{"framework": "fastapi"}'""", output="info")),
            project_root=temp_dir,
        )

        assert result.status == RecipeStatus.COMPLETED
        assert result.variables["info"] == {"framework": "fastapi"}

    @pytest.mark.asyncio
    async def test_variables_cwd_and_env(self, temp_dir):
        (temp_dir / "pkg").mkdir()
        engine = RecipeEngine()
        result = await engine.run(
            recipe(
                Step(
                    name="where",
                    tool="shell",
                    command='echo "{{greeting}} $TARGET from $(basename $(pwd))"',
                    cwd="{{dir}}",
                    env={"TARGET": "{{target}}"},
                )
            ),
            {"greeting": "hello", "dir": "pkg", "target": "world"},
            project_root=temp_dir,
        )

        assert result.get("where").value == "hello world from pkg"

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails_step(self, temp_dir):
        engine = RecipeEngine()
        result = await engine.run(
            recipe(Step(name="broken", tool="shell", command="echo oops >&2; exit 2")),
            project_root=temp_dir,
        )

        failed = result.get("broken")
        assert result.status == RecipeStatus.FAILED
        assert "command failed with exit code 2" in failed.error
        assert "stderr: oops" in failed.error

    @pytest.mark.asyncio
    async def test_missing_cwd(self, temp_dir):
        engine = RecipeEngine()
        result = await engine.run(
            recipe(Step(name="lost", tool="shell", command="true", cwd="nowhere")), project_root=temp_dir
        )

        assert "cwd does not exist" in result.get("lost").error

    @pytest.mark.asyncio
    async def test_missing_command_fails_validation(self, temp_dir):
        engine = RecipeEngine()
        result = await engine.run(recipe(Step(name="empty", tool="shell")), project_root=temp_dir)

        failed = result.get("empty")
        assert failed.error_type == "StepValidationError"
        assert failed.attempts == 0

    @pytest.mark.asyncio
    async def test_timeout(self, temp_dir):
        engine = RecipeEngine()
        result = await engine.run(
            recipe(Step(name="slow", tool="shell", command="sleep 5", timeout=0.2)), project_root=temp_dir
        )

        assert "timed out after 0.2s" in result.get("slow").error


class TestActionTool:
    @pytest.mark.asyncio
    async def test_sync_action_with_substituted_params(self, temp_dir):
        engine = RecipeEngine()

        @engine.actions.action()
        def pluralize(context, word):
            return f"{word}s"

        result = await engine.run(
            recipe(Step(name="plural", tool="action", action="pluralize", params={"word": "{{name}}"}, output="plural")),
            {"name": "user"},
            project_root=temp_dir,
        )

        assert result.variables["plural"] == "users"

    @pytest.mark.asyncio
    async def test_async_action_file_outputs_written(self, temp_dir):
        engine = RecipeEngine()
        writer = MemoryFileWriter()

        async def scaffold(context, name):
            return [FileOutput(f"{name}/__init__.py", ""), FileOutput(f"{name}/models.py", "# models\n")]

        engine.actions.register("scaffold", scaffold)
        result = await engine.run(
            recipe(Step(name="pkg", tool="action", action="scaffold", params={"name": "users"})),
            project_root=temp_dir,
            writer=writer,
        )

        assert result.status == RecipeStatus.COMPLETED
        assert writer.files == {"users/__init__.py": "", "users/models.py": "# models\n"}

    @pytest.mark.asyncio
    async def test_unknown_action(self, temp_dir):
        engine = RecipeEngine()
        result = await engine.run(recipe(Step(name="x", tool="action", action="missing")), project_root=temp_dir)

        failed = result.get("x")
        assert failed.error_type == "StepValidationError"
        assert "Action not found: 'missing'" in failed.error

    @pytest.mark.asyncio
    async def test_unexpected_params(self, temp_dir):
        engine = RecipeEngine()
        engine.actions.register("noop", lambda context: None)

        result = await engine.run(
            recipe(Step(name="x", tool="action", action="noop", params={"extra": 1})), project_root=temp_dir
        )

        assert "does not accept: extra" in result.get("x").error


class TestTemplateTool:
    @pytest.mark.asyncio
    async def test_inline_template_written(self, temp_dir):
        writer = MemoryFileWriter()
        engine = RecipeEngine(writer=writer)

        result = await engine.run(
            recipe(
                Step(
                    name="model",
                    tool="template",
                    template="class {{ name }}:\n    pass\n",
                    to="app/{{module}}.py",
                    output="source",
                )
            ),
            {"name": "User", "module": "user"},
            project_root=temp_dir,
        )

        assert writer.files == {"app/user.py": "class User:\n    pass\n"}
        assert result.variables["source"] == "class User:\n    pass\n"
        assert "wrote app/user.py" in result.get("model").messages

    @pytest.mark.asyncio
    async def test_template_file_from_search_path(self, temp_dir):
        templates = temp_dir / "templates"
        templates.mkdir()
        (templates / "hello.tmpl").write_text("Hello {{ who }}")
        engine = RecipeEngine(EngineConfig(template_paths=[templates]))

        result = await engine.run(
            recipe(Step(name="hi", tool="template", template_file="hello.tmpl", output="text")),
            {"who": "world"},
            project_root=temp_dir,
        )

        assert result.variables["text"] == "Hello world"

    @pytest.mark.asyncio
    async def test_template_next_to_recipe_wins(self, temp_dir):
        templates = temp_dir / "templates"
        recipes = temp_dir / "recipes"
        templates.mkdir()
        recipes.mkdir()
        (templates / "t.tmpl").write_text("shared")
        (recipes / "t.tmpl").write_text("local")
        engine = RecipeEngine(EngineConfig(template_paths=[templates]))

        result = await engine.run(
            recipe(Step(name="t", tool="template", template_file="t.tmpl", output="text"), path=recipes / "r.yaml")
        )

        assert result.variables["text"] == "local"

    @pytest.mark.asyncio
    async def test_inject_into_existing_file(self, temp_dir):
        writer = MemoryFileWriter({"app/routes.py": "# routes\n"})
        engine = RecipeEngine(writer=writer)

        await engine.run(
            recipe(
                Step(
                    name="register",
                    tool="template",
                    template="router.include({{ name }})",
                    to="app/routes.py",
                    mode="inject",
                    after="^# routes",
                )
            ),
            {"name": "users"},
            project_root=temp_dir,
        )

        assert writer.files["app/routes.py"] == "# routes\nrouter.include(users)\n"

    @pytest.mark.asyncio
    async def test_invalid_template_fails_validation(self, temp_dir):
        engine = RecipeEngine()
        result = await engine.run(
            recipe(Step(name="bad", tool="template", template="{% bogus %}", output="x")), project_root=temp_dir
        )

        failed = result.get("bad")
        assert failed.error_type == "StepValidationError"
        assert "Unknown tag 'bogus'" in failed.error

    @pytest.mark.asyncio
    async def test_inject_requires_anchor(self, temp_dir):
        engine = RecipeEngine()
        result = await engine.run(
            recipe(Step(name="bad", tool="template", template="x", to="a.py", mode="inject")), project_root=temp_dir
        )

        assert "inject mode requires 'after', 'before', or 'at'" in result.get("bad").error

    @pytest.mark.asyncio
    async def test_invalid_anchor_fails_validation(self, temp_dir):
        writer = MemoryFileWriter({"app/main.py": "app = FastAPI()\n"})
        engine = RecipeEngine(writer=writer)
        result = await engine.run(
            recipe(
                Step(
                    name="bad",
                    tool="template",
                    template="app.include_router(users)",
                    to="app/main.py",
                    mode="inject",
                    after="app.include_router(",
                )
            ),
            project_root=temp_dir,
        )

        failed = result.get("bad")
        assert failed.error_type == "StepValidationError"
        assert "after is not a valid regular expression" in failed.error
        assert failed.attempts == 0
        assert writer.files == {"app/main.py": "app = FastAPI()\n"}


CHILD_RECIPE = """
name: child
steps:
  - name: greet
    tool: template
    template: "Hello {{ who }}"
    to: "{{who}}.txt"
    output: greeting
"""

SELF_RECIPE = """
name: self-ref
recursion:
  max_depth: 2
steps:
  - name: loop
    tool: recipe
    recipe: self.yaml
"""


class TestRecipeTool:
    @pytest.mark.asyncio
    async def test_nested_outputs_and_files_bubble_up(self, temp_dir):
        (temp_dir / "child.yaml").write_text(CHILD_RECIPE)
        writer = MemoryFileWriter()
        engine = RecipeEngine(writer=writer)

        result = await engine.run(
            recipe(
                Step(name="nested", tool="recipe", recipe="child.yaml", variables={"who": "{{target}}"}, output="child"),
                path=temp_dir / "parent.yaml",
            ),
            {"target": "world"},
        )

        assert result.status == RecipeStatus.COMPLETED
        assert result.variables["child"] == {"greeting": "Hello world"}
        assert writer.files == {"world.txt": "Hello world"}
        assert "Nested recipe 'child' completed" in result.get("nested").messages

    @pytest.mark.asyncio
    async def test_nested_failure_fails_step(self, temp_dir):
        (temp_dir / "child.yaml").write_text(
            "name: child\nsteps:\n  - name: boom\n    tool: template\n    template: '{{ missing }}'\n    output: x\n"
        )
        engine = RecipeEngine()

        result = await engine.run(
            recipe(Step(name="nested", tool="recipe", recipe="child.yaml"), path=temp_dir / "parent.yaml")
        )

        error = result.get("nested").error
        assert "nested recipe 'child' failed" in error
        assert "boom:" in error

    @pytest.mark.asyncio
    async def test_recursion_depth_limit(self, temp_dir):
        (temp_dir / "self.yaml").write_text(SELF_RECIPE)
        engine = RecipeEngine()

        result = await engine.run(Recipe.from_yaml(temp_dir / "self.yaml"))

        assert result.status == RecipeStatus.FAILED
        assert "Recipe recursion depth 2 exceeds limit 2" in result.get("loop").error

    @pytest.mark.asyncio
    async def test_total_step_limit(self, registry, recording_tool):
        engine = RecipeEngine(registry=registry)
        steps = [Step(name=f"s{i}", tool="record") for i in range(3)]

        result = await engine.run(recipe(*steps, recursion=RecursionConfig(max_total_steps=2)))

        assert result.get("s2").status == StepStatus.FAILED
        assert result.get("s2").error == "Total steps 3 exceeds limit 2"
        assert result.get("s2").error_type == "RecursionLimitError"
        assert recording_tool.calls == ["s0", "s1"]

    @pytest.mark.asyncio
    async def test_missing_recipe_file(self, temp_dir):
        engine = RecipeEngine()
        result = await engine.run(
            recipe(Step(name="nested", tool="recipe", recipe="ghost.yaml"), path=temp_dir / "parent.yaml")
        )

        assert "recipe file not found" in result.get("nested").error


class TestAiTool:
    @pytest.mark.asyncio
    async def test_generates_into_file_and_variable(self, temp_dir, make_provider, make_service):
        provider = make_provider(responses=["# Users\n\nHandles user accounts."])
        writer = MemoryFileWriter()
        engine = RecipeEngine(ai_service=make_service({"fake": provider}), writer=writer)

        result = await engine.run(
            recipe(
                Step(
                    name="docs",
                    tool="ai",
                    prompt="Describe the {{name}} module",
                    system="You write docs for {{name}}.",
                    to="docs/{{name}}.md",
                    output="doc",
                )
            ),
            {"name": "users"},
            project_root=temp_dir,
        )

        assert result.status == RecipeStatus.COMPLETED
        assert writer.files == {"docs/users.md": "# Users\n\nHandles user accounts."}
        assert result.variables["doc"] == "# Users\n\nHandles user accounts."
        sent = provider.requests[0]
        assert "Describe the users module" in sent.user
        assert "You write docs for users." in sent.system

    @pytest.mark.asyncio
    async def test_json_output_stored_parsed(self, temp_dir, make_provider, make_service):
        provider = make_provider(responses=['```json\n{"fields": ["id", "email"]}\n```'])
        engine = RecipeEngine(ai_service=make_service({"fake": provider}))

        result = await engine.run(
            recipe(
                Step(name="schema", tool="ai", prompt="List fields", guardrails=GuardrailConfig(validate_as="json"), output="schema"),
                Step(
                    name="use",
                    tool="template",
                    template="{{ schema.fields }}",
                    output="fields",
                    depends_on=["schema"],
                ),
            ),
            project_root=temp_dir,
        )

        assert result.variables["schema"] == {"fields": ["id", "email"]}
        assert result.variables["fields"] == '["id", "email"]'

    @pytest.mark.asyncio
    async def test_context_files_sent(self, temp_dir, make_provider, make_service):
        (temp_dir / "NOTES.md").write_text("Use snake_case everywhere.")
        provider = make_provider()
        engine = RecipeEngine(ai_service=make_service({"fake": provider}))

        await engine.run(
            recipe(Step(name="gen", tool="ai", prompt="Write code", context=ContextConfig(files=["*.md"]), output="c")),
            project_root=temp_dir,
        )

        assert "### NOTES.md\n```\nUse snake_case everywhere.\n```" in provider.requests[0].user

    @pytest.mark.asyncio
    async def test_budget_failure_not_retried(self, temp_dir, make_provider, make_service):
        provider = make_provider()
        engine = RecipeEngine(ai_service=make_service({"fake": provider}))

        result = await engine.run(
            recipe(
                Step(
                    name="gen",
                    tool="ai",
                    prompt="Write code",
                    budget=BudgetConfig(max_tokens=10),
                    retries=3,
                    output="c",
                )
            ),
            project_root=temp_dir,
        )

        failed = result.get("gen")
        assert failed.error_type == "BudgetExceededError"
        assert failed.attempts == 1
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_invalid_step_settings(self, temp_dir, make_provider, make_service):
        engine = RecipeEngine(ai_service=make_service({"fake": make_provider()}))

        result = await engine.run(
            recipe(Step(name="gen", tool="ai", prompt="  ", temperature=3.0, output="c")), project_root=temp_dir
        )

        error = result.get("gen").error
        assert "ai steps require 'prompt' field" in error
        assert "temperature must be between 0 and 2" in error


class TestDefaultRegistryInEngine:
    def test_engine_uses_builtin_tools(self):
        engine = RecipeEngine()
        assert engine.registry.registered_types() == create_default_registry().registered_types()

"""
Deskpilot CLI

Operator tooling for inspecting the engine's static configuration.

Commands:
    deskpilot policy <tool> - Show the effective risk policy
    deskpilot hash <tool> <json> - Intent hash of a tool call
    deskpilot reason-codes [-c CAT] - List the reason-code registry
    deskpilot parse <file|-> - Run the assessment parser

Usage:
    pip install deskpilot[cli]
    deskpilot policy cancel_order
"""

from __future__ import annotations

import json
import sys


def build_cli():
    """Build the click command group."""
    import click

    from deskpilot import __version__
    from deskpilot.assessment.parser import AssessmentOk, split_response
    from deskpilot.audit.reason_codes import (
        codes_in_category,
        describe_reason_code,
        reason_code_category,
    )
    from deskpilot.core.models import ReasonCategory, ReasonCode
    from deskpilot.intent.hasher import canonical_intent, generate_intent_hash
    from deskpilot.policy.tool_policies import ToolPolicyEngine

    @click.group()
    @click.version_option(version=__version__, prog_name="deskpilot")
    def app() -> None:
        """Deskpilot: Tool Execution & Adaptive Reasoning Engine"""
        pass

    @app.command()
    @click.argument("tool")
    @click.option(
        "--policies",
        "policies_file",
        type=click.Path(exists=True, dir_okay=False),
        help="JSON file with policy overrides.",
    )
    def policy(tool: str, policies_file: str | None) -> None:
        """Show the effective risk policy for TOOL."""
        engine = ToolPolicyEngine.from_json_file(policies_file) if policies_file else ToolPolicyEngine()
        effective = engine.get_tool_policy(tool)
        configured = tool in engine.policies()
        click.echo(f"Tool:                  {tool}{'' if configured else ' (default policy)'}")
        click.echo(f"Destructive:           {effective.is_destructive}")
        click.echo(f"Max confidence:        {effective.max_confidence}")
        click.echo(f"Requires confirmation: {engine.requires_confirmation(tool)}")

    @app.command(name="hash")
    @click.argument("tool")
    @click.argument("params", default="{}")
    def hash_cmd(tool: str, params: str) -> None:
        """Print the intent hash of TOOL called with JSON PARAMS."""
        try:
            parsed = json.loads(params)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"not valid JSON: {e}", param_hint="PARAMS")
        if not isinstance(parsed, dict):
            raise click.BadParameter("must be a JSON object", param_hint="PARAMS")
        click.echo(generate_intent_hash(tool, parsed))
        click.echo(canonical_intent(tool, parsed), err=True)

    @app.command(name="reason-codes")
    @click.option(
        "--category",
        "-c",
        type=click.Choice([c.value for c in ReasonCategory]),
        help="Only list codes in this category.",
    )
    def reason_codes(category: str | None) -> None:
        """List registered reason codes."""
        codes = codes_in_category(category) if category else list(ReasonCode)
        for code in codes:
            click.echo(f"{code.value:<28} {reason_code_category(code).value:<10} {describe_reason_code(code)}")

    @app.command()
    @click.argument("source", type=click.File("r"), default="-")
    def parse(source) -> None:
        """Parse an LLM reply (file or stdin) and print the assessment as JSON."""
        visible, result = split_response(source.read())
        if isinstance(result, AssessmentOk):
            payload = {"ok": True, "visible": visible, "assessment": result.assessment.model_dump()}
        else:
            payload = {"ok": False, "visible": visible, "reason": result.reason}
        click.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        if not payload["ok"]:
            sys.exit(1)

    return app


def main() -> None:
    """Entry point for the ``deskpilot`` console script.

    Lazily imports ``click`` so that the library does not require the
    cli extra.
    """
    try:
        import click  # noqa: F401
    except ImportError:
        print(
            "The Deskpilot CLI requires additional dependencies.\n"
            "Install them with: pip install deskpilot[cli]"
        )
        sys.exit(1)

    build_cli()()


if __name__ == "__main__":
    main()

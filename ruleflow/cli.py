"""CLI entry point for rule flow."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from ruleflow.config import Config, load_config
from ruleflow.controller import LoadStatus, ViewStateController
from ruleflow.db import RuleDB
from ruleflow.detail import action_label, description_preview
from ruleflow.errors import InputMissing, NotFound, TransportFailure
from ruleflow.ingest import ingest_file
from ruleflow.layout import Diagram, EdgeKind
from ruleflow.models import FilterName
from ruleflow.service import RuleService


def format_diagram(diagram: Diagram) -> str:
    """Plain-text rendering of a diagram: one block per group, then the pivot links."""
    lines = [f"Subject: {diagram.subject}"]
    rules_by_group: dict[str, list[str]] = {}
    for node in diagram.rule_nodes:
        rule = node.rule
        flags = []
        if not rule.active:
            flags.append("inactive")
        if rule.aborts_on_condition:
            flags.append("aborts")
        if rule.inherited_from_ancestor:
            flags.append(f"inherited from {rule.inherited_from_ancestor}")
        line = f"    #{rule.order:<5} {rule.name}  [{action_label(rule)}]"
        if flags:
            line += f" ({', '.join(flags)})"
        if node.selected:
            line = "  > " + line.lstrip()
        if rule.description:
            line += f"\n          {description_preview(rule.description)}"
        rules_by_group.setdefault(node.parent_id, []).append(line)

    for group in diagram.groups:
        state = "collapsed" if group.collapsed else "expanded"
        noun = "rule" if group.rule_count == 1 else "rules"
        lines.append(f"  {group.label} ({group.rule_count} {noun}, {state})")
        lines.extend(rules_by_group.get(group.id, []))

    links = [e for e in diagram.edges if e.kind == EdgeKind.PIVOT_LINK]
    if links:
        lines.append("  Links:")
        for e in links:
            text = f"    {e.source} -> {e.target}"
            if e.label:
                text += f"  ({e.label})"
            lines.append(text)
    if not diagram.has_content:
        lines.append("  No rules to show with the current filters.")
    return "\n".join(lines)


async def _layout(args: argparse.Namespace, service: RuleService, config: Config) -> int:
    controller = ViewStateController(service, service, layout_config=config.layout)
    outcome = await controller.load_subject(args.subject)
    await controller.flush_background()
    if outcome.status != LoadStatus.LOADED or controller.diagram is None:
        print(outcome.message)
        return 1

    for name in FilterName:
        if getattr(args, name.value):
            controller.set_filter(name, True)
    if args.expand_all:
        controller.expand_all()
    else:
        for group in args.expand or []:
            controller.toggle_group(group if group.startswith("group-") else f"group-{group}")
    if args.select:
        controller.select_rule(args.select)

    diagram = controller.diagram
    if args.json:
        print(diagram.model_dump_json(indent=2))
    else:
        print(format_diagram(diagram))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Rule Flow")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    # import command
    import_parser = sub.add_parser("import", help="Import subjects and rules from YAML/JSON")
    import_parser.add_argument("path", help="Rule document to import")

    # layout command
    layout_parser = sub.add_parser("layout", help="Lay out the rule diagram for a subject")
    layout_parser.add_argument("subject", help="Subject (table) name")
    layout_parser.add_argument(
        "--expand", action="append", metavar="PHASE",
        help="Expand a phase group (before/after/async/display). Repeatable.",
    )
    layout_parser.add_argument("--expand-all", action="store_true", help="Expand every group")
    layout_parser.add_argument("--hide-inherited", action="store_true", help="Hide inherited rules")
    layout_parser.add_argument("--hide-active", action="store_true", help="Hide active rules")
    layout_parser.add_argument("--hide-inactive", action="store_true", help="Hide inactive rules")
    layout_parser.add_argument("--select", metavar="RULE_ID", help="Mark a rule as selected")
    layout_parser.add_argument("--json", action="store_true", help="Print the renderer payload as JSON")

    # subjects command
    subjects_parser = sub.add_parser("subjects", help="List or search subjects")
    subjects_parser.add_argument("query", nargs="?", help="Substring of name or label")

    # recent command
    sub.add_parser("recent", help="Show recently viewed subjects")

    # forget command
    forget_parser = sub.add_parser("forget", help="Remove a subject from the recent list")
    forget_parser.add_argument("subject")

    # script command
    script_parser = sub.add_parser("script", help="Print a rule's script body")
    script_parser.add_argument("rule_id")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config()
    db = RuleDB(config)
    db.init_db()
    service = RuleService(db, config)
    exit_code = 0

    try:
        if args.command == "import":
            result = ingest_file(Path(args.path), db)
            print(result)

        elif args.command == "layout":
            exit_code = asyncio.run(_layout(args, service, config))

        elif args.command == "subjects":
            if args.query:
                matches = service.search_subjects(args.query)
                if not matches:
                    print(f"No subjects match '{args.query}'.")
                for m in matches:
                    print(f"  {m['label']}")
            else:
                subjects = service.list_subjects()
                if not subjects:
                    print("No subjects with active rules. Run 'import' first.")
                for s in subjects:
                    print(f"  {s}")

        elif args.command == "recent":
            recent = asyncio.run(service.get_recent_subjects())
            if not recent:
                print("No recently viewed subjects.")
            for s in recent:
                print(f"  {s}")

        elif args.command == "forget":
            asyncio.run(service.delete_subject_preference(args.subject))
            print(f"Removed {args.subject} from recent subjects.")

        elif args.command == "script":
            script = asyncio.run(service.fetch_script(args.rule_id))
            print(script.script_body)

        else:
            parser.print_help()
    except (InputMissing, NotFound, TransportFailure) as e:
        print(f"Error: {e}")
        exit_code = 1
    finally:
        db.close()

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()

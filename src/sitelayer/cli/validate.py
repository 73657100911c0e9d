"""
CLI command for validating a desired-state document.
"""

from sitelayer.cli.ux import console, print_table, success
from sitelayer.core.errors import main_with_error_handling
from sitelayer.orchestration.graph import build
from sitelayer.resources.parser import load_document


@main_with_error_handling()
def validate_command(document: str, *, verbose: bool = False) -> int:
    """
    Parse the document and build its dependency graph.

    Touches neither state nor the provider.

    Returns:
        Exit code (0 valid, 12 invalid)
    """
    desired = load_document(document)
    graph = build(desired.descriptors)

    if verbose:
        rows = []
        for address in graph.topological_order():
            descriptor = graph.nodes[address]
            deps = ", ".join(sorted(graph.dependencies(address)))
            rows.append([address, descriptor.kind.value, deps])
        print_table(["Address", "Kind", "Depends on"], rows)
        console.print()

    success(f"{document} is valid: {len(desired)} resources, {len(graph.edges())} dependencies")
    return 0

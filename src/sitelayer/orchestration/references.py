"""Substitution of ``${address.output}`` references with committed values.

Shared by the executor, which resolves attributes right before a provider
call, and the planner, which compares what a reference resolves to now
with what the dependent was last given.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

from sitelayer.core.errors import PermanentProviderError
from sitelayer.resources.models import REFERENCE_PATTERN, ResourceDescriptor
from sitelayer.state.models import StateRecord

_WHOLE_REFERENCE = re.compile(rf"^{REFERENCE_PATTERN.pattern}$")


def resolve_value(address: str, value: Any, records: Mapping[str, StateRecord]) -> Any:
    """Resolve every reference inside ``value`` on behalf of ``address``.

    A string that is exactly one reference takes the output's value as is;
    references embedded in longer strings are interpolated as text.

    Raises:
        PermanentProviderError: a referenced output has no committed value
    """

    def lookup(target: str, output: str) -> Any:
        record = records.get(target)
        if record is not None:
            if output in record.outputs:
                return record.outputs[output]
            if output == "id" and record.provider_id:
                return record.provider_id
            if output in record.last_applied_attributes:
                return record.last_applied_attributes[output]
        raise PermanentProviderError(
            f"{address}: ${{{target}.{output}}} has no value yet",
            {"target": target, "output": output},
        )

    def substitute(item: Any) -> Any:
        if isinstance(item, str):
            whole = _WHOLE_REFERENCE.match(item)
            if whole:
                return lookup(whole.group(1), whole.group(2))
            return REFERENCE_PATTERN.sub(lambda m: str(lookup(m.group(1), m.group(2))), item)
        if isinstance(item, dict):
            return {key: substitute(child) for key, child in item.items()}
        if isinstance(item, list):
            return [substitute(child) for child in item]
        return item

    return substitute(value)


def resolve_attributes(
    descriptor: ResourceDescriptor, records: Mapping[str, StateRecord]
) -> dict[str, Any]:
    """Attributes of ``descriptor`` with every reference substituted."""
    return resolve_value(descriptor.address, descriptor.plain_attributes(), records)

#
# Copyright contributors to the sqlserver-agent project
#
from typing import Iterable, List

from .models import Detail


def merge_details(existing: Iterable[Detail], incoming: Iterable[Detail]) -> List[Detail]:
    """Fold ``incoming`` details into ``existing`` by name.

    For each incoming detail the first existing detail with the same
    name absorbs its fields after its own; unmatched details are
    appended. Folding more than two contributors is repeated pairwise
    application in contribution order. Neither input is modified.
    """
    merged = [d.model_copy(update={"fields": list(d.fields)}) for d in existing]
    for detail in incoming:
        for current in merged:
            if current.name == detail.name:
                current.fields.extend(detail.fields)
                break
        else:
            merged.append(detail.model_copy(update={"fields": list(detail.fields)}))
    return merged

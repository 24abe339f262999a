from itertools import chain


def _dedup_chain(*streams, key=id):
    """
    Lazily merge multiple input iterators, yielding unique items only.

    Uniqueness is decided by ``key`` (object identity by default), so
    unhashable items such as records can be merged too.
    """
    seen = set()
    for item in chain(*streams):
        marker = key(item)
        if marker not in seen:
            seen.add(marker)
            yield item


def split_prefixed(row, prefix):
    """
    Split a row mapping into (plain columns, columns carrying ``prefix`` with
    the prefix removed).
    """
    plain = {}
    prefixed = {}
    for k, v in row.items():
        if k.startswith(prefix):
            prefixed[k[len(prefix):]] = v
        else:
            plain[k] = v
    return plain, prefixed

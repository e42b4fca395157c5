from cachemeter.result import Ok, Result


class MemoryStore:
    """
    MemoryStore implements the PersistentStore protocol on a plain
    dict. It is durable only for the lifetime of the process and is
    used for tests and ephemeral sessions.
    """

    def __init__(self, initial: "dict[str, str] | None" = None) -> "None":
        self._data: "dict[str, str]" = dict(initial or {})

    async def get_item(self, key: "str") -> "Result[str | None]":
        return Ok(self._data.get(key))

    async def set_item(self, key: "str", value: "str") -> "Result[None]":
        self._data[key] = value
        return Ok(None)

    async def remove_item(self, key: "str") -> "Result[None]":
        self._data.pop(key, None)
        return Ok(None)

    async def get_all_keys(self) -> "Result[list[str]]":
        return Ok(list(self._data))

    async def close(self) -> "None":
        pass

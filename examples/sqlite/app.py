import asyncio
from dataclasses import dataclass
from typing import List

from tandem import SQLitePool, TransactionManager


@dataclass
class City:
    id: int
    name: str
    population: int


class CityRepository:
    def __init__(self, manager: TransactionManager):
        self.manager = manager

    async def add(self, name: str, population: int) -> int:
        engine = self.manager.get_query_engine()
        await engine.execute(
            "INSERT INTO city (name, population) VALUES (?, ?)",
            (name, population),
        )
        return await engine.query_row("SELECT last_insert_rowid()").scalar()

    async def select_all(self) -> List[City]:
        engine = self.manager.get_query_engine()
        return [
            City(**row)
            async for row in engine.query("SELECT * FROM city ORDER BY id")
        ]

    async def largest(self, count: int) -> List[str]:
        engine = self.manager.get_query_engine()
        names = []
        async with engine.query(
            "SELECT name FROM city ORDER BY population DESC"
        ) as rows:
            async for row in rows:
                if len(names) == count:
                    break
                names.append(row["name"])
        return names


async def add_cities(manager, repository, cities):
    async def work(ctx):
        return [await repository.add(*city) for city in cities]

    return await manager.run_transaction(None, work)


async def run():
    pool = SQLitePool(":memory:")
    await pool.open()
    await pool.execute(
        "CREATE TABLE city ("
        "id INTEGER PRIMARY KEY, "
        "name TEXT NOT NULL, "
        "population INTEGER NOT NULL)"
    )
    manager = TransactionManager(pool)
    repository = CityRepository(manager)

    async def import_cities(ctx):
        # Both calls join this transaction
        await add_cities(manager, repository, [("Kabul", 1780000)])
        await add_cities(manager, repository, [("Qandahar", 237500)])

    await manager.run_transaction(None, import_cities)

    try:
        await add_cities(manager, repository, [("Herat", 186800), (None, 0)])
    except Exception as e:
        print(f"Import failed, nothing written: {e}")

    print(await repository.select_all())
    print(await repository.largest(1))
    await pool.close()


asyncio.run(run())

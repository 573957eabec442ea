"""
PostgreSQL asset graph

All structural mutations run on one connection inside one open transaction,
so this process reads its own uncommitted changes until commit().
"""

import asyncio
import json
import logging
import os
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from ..errors import GraphLocationError
from ..utils.db import execute_on, execute_query, get_engine
from .models import (
    CONTAINER_TEMPLATE,
    Attribute,
    AttributeKind,
    AttributeTemplate,
    ChangeInfo,
    IntervalRecord,
    Node,
    NodeTemplate,
    RelationKind,
    base_template_name,
    effective_attribute_templates,
)

SCHEMA_FILE = os.path.join(os.path.dirname(__file__), "schema.sql")

_NODE_COLUMNS = "n.id, n.name, n.template, c.name AS container"


class PgAssetGraph:
    """AssetGraphStore over SQLAlchemy async + psycopg"""

    def __init__(self, engine: AsyncEngine, schema: str):
        self._engine = engine
        self._schema = schema

        self._conn: Optional[AsyncConnection] = None
        self._lock = asyncio.Lock()

        self._templates: Dict[str, NodeTemplate] = {}
        self._last_change_id = 0

    @classmethod
    async def connect(cls, schema: str, db_config: str = "") -> "PgAssetGraph":
        graph = cls(get_engine(db_config, schema), schema)
        await graph.open()
        return graph

    #-----------------------------------------------------

    async def open(self):
        rows = await execute_query(
            "SELECT schema_name FROM information_schema.schemata WHERE schema_name = :schema",
            {"schema": self._schema},
            engine=self._engine,
        )
        if not rows:
            raise GraphLocationError(f"Schema '{self._schema}' does not exist.")

        with open(SCHEMA_FILE, "r", encoding="utf-8") as f:
            statements = [s.strip() for s in f.read().split(";\n") if s.strip()]
        for statement in statements:
            await execute_query(statement, engine=self._engine)

        self._conn = await self._engine.connect()
        await self._load_templates()

        logging.info(f"[PgAssetGraph] Opened graph in schema {self._schema} with {len(self._templates)} templates")

    async def _execute(self, query: str, params: Any = None):
        if self._conn is None:
            raise GraphLocationError(f"Graph '{self._schema}' is not open.")

        async with self._lock:
            return await execute_on(self._conn, query, params)

    async def _load_templates(self):
        templates = {}
        for row in await self._execute("SELECT name, base FROM node_templates"):
            templates[row["name"]] = NodeTemplate(name=row["name"], base=row["base"])

        rows = await self._execute(
            "SELECT template, name, kind, default_value, point_pattern FROM attribute_templates"
        )
        for row in rows:
            template = templates.get(row["template"])
            if template is None:
                continue
            template.attributes[row["name"]] = AttributeTemplate(
                name=row["name"],
                kind=AttributeKind(row["kind"]),
                default=row["default_value"],
                point_pattern=row["point_pattern"] or "",
            )

        self._templates = templates

    @staticmethod
    def _to_node(row: Dict[str, Any]) -> Node:
        return Node(id=row["id"], name=row["name"], template=row["template"], container=row.get("container"))

    async def _select_nodes(self, where: str, params: Dict[str, Any], suffix: str = "ORDER BY n.name") -> List[Node]:
        rows = await self._execute(
            f"SELECT {_NODE_COLUMNS} FROM nodes n LEFT JOIN nodes c ON c.id = n.container_id "
            f"WHERE {where} {suffix}",
            params,
        )
        return [self._to_node(row) for row in rows]

    async def _record_change(self, node: Node, action: str):
        await self._execute(
            "INSERT INTO asset_changes (node_id, node_name, template, action) "
            "VALUES (:node_id, :node_name, :template, :action)",
            {"node_id": node.id, "node_name": node.name, "template": node.template, "action": action},
        )

    #-----------------------------------------------------
    # Templates and containers

    async def get_template(self, name: str) -> Optional[NodeTemplate]:
        return self._templates.get(name)

    async def base_template_name(self, template_name: str) -> str:
        return base_template_name(self._templates, template_name)

    async def find_container(self, name: str) -> Optional[Node]:
        nodes = await self._select_nodes(
            "n.template = :template AND n.name = :name",
            {"template": CONTAINER_TEMPLATE, "name": name},
        )
        return nodes[0] if nodes else None

    async def create_container(self, name: str) -> Node:
        node = Node(name=name, template=CONTAINER_TEMPLATE)
        await self._execute(
            "INSERT INTO nodes (id, name, template) VALUES (:id, :name, :template)",
            {"id": node.id, "name": node.name, "template": node.template},
        )
        return node

    async def container_children(self, container: Node) -> List[Node]:
        nodes = await self._select_nodes("n.container_id = :id", {"id": container.id})

        names = set()
        for template in {n.template for n in nodes}:
            names.update(effective_attribute_templates(self._templates, template).keys())
        await self.load_attributes(nodes, sorted(names))

        return nodes

    #-----------------------------------------------------
    # Nodes and attributes

    async def create_node(self, container: Node, name: str, template: str) -> Node:
        node = Node(name=name, template=template, container=container.name)
        await self._execute(
            "INSERT INTO nodes (id, name, template, container_id) VALUES (:id, :name, :template, :container_id)",
            {"id": node.id, "name": name, "template": template, "container_id": container.id},
        )

        rows = []
        for at in effective_attribute_templates(self._templates, template).values():
            value = None if at.is_series else at.default
            node.attributes[at.name] = Attribute(node=node, name=at.name, template=at, value=value)
            rows.append({"node_id": node.id, "name": at.name, "value": json.dumps(value)})

        if rows:
            await self._execute(
                "INSERT INTO node_attributes (node_id, name, value) VALUES (:node_id, :name, CAST(:value AS jsonb))",
                rows,
            )

        await self._record_change(node, "added")
        return node

    async def get_nodes(self, ids: Sequence[str]) -> List[Node]:
        if not ids:
            return []
        return await self._select_nodes("n.id = ANY(:ids)", {"ids": list(ids)})

    async def find_nodes_by_template(
        self,
        template: str,
        start: int,
        count: int,
        include_derived: bool = True
    ) -> Tuple[List[Node], int]:
        if include_derived:
            names = [t for t in self._templates if self._derives_from(t, template)]
        else:
            names = [template]

        rows = await self._execute(
            "SELECT COUNT(*) AS total FROM nodes WHERE template = ANY(:names)",
            {"names": names},
        )
        total = int(rows[0]["total"]) if rows else 0

        nodes = await self._select_nodes(
            "n.template = ANY(:names)",
            {"names": names, "start": start, "count": count},
            "ORDER BY n.name OFFSET :start LIMIT :count",
        )
        return nodes, total

    def _derives_from(self, template: str, base: str) -> bool:
        seen = set()
        current = self._templates.get(template)
        while current is not None and current.name not in seen:
            if current.name == base:
                return True
            seen.add(current.name)
            current = self._templates.get(current.base) if current.base else None
        return False

    async def load_attributes(self, nodes: Sequence[Node], names: Sequence[str]) -> None:
        if not nodes or not names:
            return

        rows = await self._execute(
            "SELECT node_id, name, value, config_string FROM node_attributes "
            "WHERE node_id = ANY(:ids) AND name = ANY(:names)",
            {"ids": [n.id for n in nodes], "names": list(names)},
        )
        stored = {(row["node_id"], row["name"]): row for row in rows}

        for node in nodes:
            templates = effective_attribute_templates(self._templates, node.template)
            for name in names:
                at = templates.get(name)
                row = stored.get((node.id, name))
                if at is None and row is None:
                    continue

                node.attributes[name] = Attribute(
                    node=node,
                    name=name,
                    template=at,
                    value=row["value"] if row else (at.default if at and not at.is_series else None),
                    config_string=row["config_string"] if row else "",
                )

    async def get_attribute_value(self, node: Node, name: str) -> Any:
        rows = await self._execute(
            "SELECT value FROM node_attributes WHERE node_id = :id AND name = :name",
            {"id": node.id, "name": name},
        )
        return rows[0]["value"] if rows else None

    async def set_attribute_value(self, node: Node, name: str, value: Any) -> None:
        await self._execute(
            "INSERT INTO node_attributes (node_id, name, value) VALUES (:id, :name, CAST(:value AS jsonb)) "
            "ON CONFLICT (node_id, name) DO UPDATE SET value = EXCLUDED.value",
            {"id": node.id, "name": name, "value": json.dumps(value)},
        )
        await self._record_change(node, "updated")

    #-----------------------------------------------------
    # Relationships

    async def add_child(self, parent: Node, child: Node, kind: RelationKind = RelationKind.WEAK) -> None:
        if kind == RelationKind.OWNED:
            await self._execute(
                "UPDATE nodes SET container_id = :parent_id WHERE id = :child_id",
                {"parent_id": parent.id, "child_id": child.id},
            )
            return

        await self._execute(
            "INSERT INTO node_relations (parent_id, child_id, kind) VALUES (:parent_id, :child_id, :kind) "
            "ON CONFLICT DO NOTHING",
            {"parent_id": parent.id, "child_id": child.id, "kind": kind.value},
        )

    async def remove_child(self, parent: Node, child: Node) -> None:
        await self._execute(
            "DELETE FROM node_relations WHERE parent_id = :parent_id AND child_id = :child_id",
            {"parent_id": parent.id, "child_id": child.id},
        )

    async def get_parents(self, child: Node, kind: RelationKind = RelationKind.WEAK) -> List[Node]:
        if kind == RelationKind.OWNED:
            return await self._select_nodes(
                "n.id = (SELECT container_id FROM nodes WHERE id = :id)", {"id": child.id}
            )

        return await self._select_nodes(
            "n.id IN (SELECT parent_id FROM node_relations WHERE child_id = :id AND kind = :kind)",
            {"id": child.id, "kind": kind.value},
        )

    async def get_children(self, parent: Node, kind: RelationKind = RelationKind.WEAK) -> List[Node]:
        if kind == RelationKind.OWNED:
            return await self._select_nodes("n.container_id = :id", {"id": parent.id})

        return await self._select_nodes(
            "n.id IN (SELECT child_id FROM node_relations WHERE parent_id = :id AND kind = :kind)",
            {"id": parent.id, "kind": kind.value},
        )

    async def set_point_bindings(self, attributes: Sequence[Attribute]) -> None:
        rows = [
            {"id": a.node.id, "name": a.name, "config_string": a.config_string}
            for a in attributes if a.config_string
        ]
        if not rows:
            return

        await self._execute(
            "INSERT INTO node_attributes (node_id, name, config_string) VALUES (:id, :name, :config_string) "
            "ON CONFLICT (node_id, name) DO UPDATE SET config_string = EXCLUDED.config_string",
            rows,
        )

    #-----------------------------------------------------
    # Change log

    async def find_changes(self, cursor: Any) -> Tuple[List[ChangeInfo], Any]:
        if cursor is None:
            rows = await self._execute("SELECT COALESCE(MAX(id), 0) AS id FROM asset_changes")
            self._last_change_id = int(rows[0]["id"]) if rows else 0
            return [], self._last_change_id

        rows = await self._execute(
            "SELECT id, node_id, node_name, template, action, changed_at FROM asset_changes "
            "WHERE id > :cursor ORDER BY id",
            {"cursor": int(cursor)},
        )
        changes = [
            ChangeInfo(
                sequence=row["id"],
                node_id=row["node_id"],
                node_name=row["node_name"],
                template=row["template"],
                action=row["action"],
                changed_at=row["changed_at"],
            )
            for row in rows
        ]

        new_cursor = changes[-1].sequence if changes else int(cursor)
        self._last_change_id = max(self._last_change_id, new_cursor)
        return changes, new_cursor

    async def refresh(self, changes: Optional[Sequence[ChangeInfo]] = None) -> None:
        # Templates are the only cached objects, nodes are read fresh.
        await self._load_templates()

    async def wait_for_change(self, timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            # Polled on a pooled connection, the graph connection may sit in a transaction.
            rows = await execute_query(
                "SELECT COALESCE(MAX(id), 0) AS id FROM asset_changes", engine=self._engine
            )
            if rows and int(rows[0]["id"]) > self._last_change_id:
                return True

            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(1.0, remaining))

    #-----------------------------------------------------

    async def create_interval(self, record: IntervalRecord) -> None:
        # Persisted on its own connection so it is checked in at once.
        await execute_query(
            "INSERT INTO intervals (id, name, node_id, start_time, end_time) "
            "VALUES (:id, :name, :node_id, :start_time, :end_time)",
            {
                "id": record.id or str(uuid.uuid4()),
                "name": record.name,
                "node_id": record.node.id,
                "start_time": record.start,
                "end_time": record.end,
            },
            engine=self._engine,
        )

    async def commit(self) -> None:
        if self._conn is None:
            return

        async with self._lock:
            await self._conn.commit()

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await self._conn.rollback()
                await self._conn.close()
                self._conn = None

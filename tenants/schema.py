"""
Base schema created in every new tenant database.

The CRUD screens own their migrations; this is only the starting point so a
freshly created vault can be opened by them.
"""

import sqlite3

SCHEMA_VERSION = 1

BASE_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS configuracion (
        clave TEXT PRIMARY KEY,
        valor TEXT NOT NULL,
        actualizado_en TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS clientes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        nombre TEXT NOT NULL,
        nif TEXT,
        direccion TEXT,
        email TEXT,
        telefono TEXT,
        creado_en TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS productos (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        nombre TEXT NOT NULL,
        precio_unitario REAL NOT NULL DEFAULT 0,
        tipo_iva REAL NOT NULL DEFAULT 21,
        activo INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS facturas (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        numero TEXT NOT NULL UNIQUE,
        cliente_id INTEGER NOT NULL REFERENCES clientes(id),
        fecha TEXT NOT NULL,
        estado TEXT NOT NULL DEFAULT 'borrador',
        base_imponible REAL NOT NULL DEFAULT 0,
        total_iva REAL NOT NULL DEFAULT 0,
        total_irpf REAL NOT NULL DEFAULT 0,
        total REAL NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lineas_factura (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        factura_id INTEGER NOT NULL REFERENCES facturas(id) ON DELETE CASCADE,
        producto_id INTEGER REFERENCES productos(id),
        descripcion TEXT NOT NULL,
        cantidad REAL NOT NULL DEFAULT 1,
        precio_unitario REAL NOT NULL DEFAULT 0,
        tipo_iva REAL NOT NULL DEFAULT 21
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS gastos (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        fecha TEXT NOT NULL,
        concepto TEXT NOT NULL,
        proveedor TEXT,
        base_imponible REAL NOT NULL DEFAULT 0,
        tipo_iva REAL NOT NULL DEFAULT 21,
        total REAL NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS adjuntos (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        nombre_cifrado TEXT NOT NULL UNIQUE,
        nombre_original TEXT NOT NULL,
        tipo_mime TEXT,
        tamano INTEGER NOT NULL DEFAULT 0,
        gasto_id INTEGER REFERENCES gastos(id) ON DELETE SET NULL,
        creado_en TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
]


def apply_base_schema(conn: sqlite3.Connection) -> None:
    """Create the base tables and stamp the schema version."""
    for statement in BASE_SCHEMA:
        conn.execute(statement)
    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
    conn.commit()

from __future__ import annotations

import json
import logging
import os
import threading
import weakref
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Mapping, Optional

import dicttoxml
from flask import Flask, Response, current_app, g, jsonify, make_response, request
from werkzeug.exceptions import BadRequest, HTTPException

from config import Config
from db import Storage, create_storage, error_message, initialize


logger = logging.getLogger(__name__)

# Structured columns stored as TEXT, with the value used when the text is not valid JSON.
JSON_FIELDS: Dict[str, Any] = {"datos": dict, "productos": list}


def to_json_text(value: Any) -> Any:
	if isinstance(value, (dict, list)):
		return json.dumps(value)
	return value


def serialize_json_fields(body: Any) -> Any:
	"""Serialize structured ``datos``/``productos`` in a request body, in place."""
	if not isinstance(body, dict):
		return body
	for field in JSON_FIELDS:
		if field in body:
			body[field] = to_json_text(body[field])
	return body


def _reject_constant(token: str) -> Any:
	raise ValueError(f"non-standard JSON token {token}")


def normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
	"""Parse the JSON text columns of a row; malformed text becomes ``{}`` / ``[]``.

	``NaN`` and ``Infinity`` count as malformed: they are not valid JSON.
	"""
	for field, default in JSON_FIELDS.items():
		value = row.get(field)
		if not isinstance(value, str) or not value:
			continue
		try:
			row[field] = json.loads(value, parse_constant=_reject_constant)
		except ValueError as e:
			logger.error("Error al parsear JSON de %s: %s", field, e)
			row[field] = default()
	return row


def normalize_rows(rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
	return [normalize_row(r) for r in rows]


def _get_format() -> str:
	fmt = (request.args.get("format") or "json").strip().lower()
	return fmt if fmt in {"json", "xml"} else "json"


def _to_xml(payload: Any, root: str = "response") -> bytes:
	return dicttoxml.dicttoxml(payload, custom_root=root, attr_type=False)


def api_response(payload: Any, status: int = 200, *, root: str = "response") -> Response:
	if _get_format() == "xml":
		resp = make_response(_to_xml(payload, root=root), status)
		resp.headers["Content-Type"] = "application/xml; charset=utf-8"
		return resp
	return make_response(jsonify(payload), status)


def error_response(message: str, status: int) -> Response:
	return api_response({"error": message}, status=status, root="error")


def message_response(message: str, status: int = 200) -> Response:
	return api_response({"message": message}, status=status)


def _storage() -> Storage:
	return current_app.extensions["storage"]


def _body() -> Dict[str, Any]:
	body = g.get("body")
	return body if isinstance(body, dict) else {}


def _handle_db_error(exc: Exception) -> Response:
	logger.exception("Error de base de datos")
	return error_response(error_message(exc), 500)


def _coerce_total(value: Any) -> Any:
	if isinstance(value, str):
		try:
			return float(value)
		except ValueError:
			return value
	return value


def _persona_params(body: Dict[str, Any], dni: Any) -> Dict[str, Any]:
	return {
		"dni": dni,
		"nombres": body.get("nombres"),
		"apellidos": body.get("apellidos"),
		"datos": to_json_text(body.get("datos")),
	}


def _venta_params(body: Dict[str, Any], venta_id: Any) -> Dict[str, Any]:
	return {
		"id": venta_id,
		"cliente_dni": body.get("cliente_dni"),
		"vendedor_dni": body.get("vendedor_dni"),
		"fecha": body.get("fecha"),
		"productos": to_json_text(body.get("productos")),
		"total": _coerce_total(body.get("total")),
	}


def _fetch_optional(storage: Storage, table: str, dni: Any) -> Optional[Dict[str, Any]]:
	rows = storage.execute(f"SELECT * FROM {table} WHERE dni = :dni", {"dni": dni})
	return normalize_row(rows[0]) if rows else None


def _register_persona_routes(app: Flask, table: str, label: str) -> None:
	"""clientes and vendedores share the same columns and routes."""
	base = f"/api/{table}"

	@app.get(base, endpoint=f"list_{table}")
	def list_rows() -> Response:
		try:
			rows = _storage().execute(f"SELECT * FROM {table}")
			return api_response(normalize_rows(rows))
		except Exception as e:
			return _handle_db_error(e)

	@app.get(f"{base}/<dni>", endpoint=f"get_{table}")
	def get_row(dni: str) -> Response:
		try:
			rows = _storage().execute(f"SELECT * FROM {table} WHERE dni = :dni", {"dni": dni})
			if not rows:
				return message_response(f"{label} no encontrado", 404)
			return api_response(normalize_rows(rows)[0])
		except Exception as e:
			return _handle_db_error(e)

	@app.post(base, endpoint=f"create_{table}")
	def create_row() -> Response:
		body = _body()
		try:
			_storage().execute(
				f"INSERT INTO {table} (dni, nombres, apellidos, datos) VALUES (:dni, :nombres, :apellidos, :datos)",
				_persona_params(body, body.get("dni")),
			)
			return message_response(f"{label} creado exitosamente", 201)
		except Exception as e:
			return _handle_db_error(e)

	@app.put(f"{base}/<dni>", endpoint=f"update_{table}")
	def update_row(dni: str) -> Response:
		body = _body()
		try:
			_storage().execute(
				f"UPDATE {table} SET nombres = :nombres, apellidos = :apellidos, datos = :datos WHERE dni = :dni",
				_persona_params(body, dni),
			)
			return message_response(f"{label} actualizado exitosamente")
		except Exception as e:
			return _handle_db_error(e)

	@app.delete(f"{base}/<dni>", endpoint=f"delete_{table}")
	def delete_row(dni: str) -> Response:
		try:
			_storage().execute(f"DELETE FROM {table} WHERE dni = :dni", {"dni": dni})
			return message_response(f"{label} eliminado exitosamente")
		except Exception as e:
			return _handle_db_error(e)


def create_app(overrides: Optional[Mapping[str, Any]] = None, *, storage: Optional[Storage] = None) -> Flask:
	app = Flask(__name__)
	app.config.from_object(Config)

	# Ensure env vars always take precedence (Config class attributes are evaluated at import time).
	def _env(name: str, default: Any) -> Any:
		value = os.getenv(name)
		if value is None:
			return default
		return value

	for key in ("DATABASE_URL", "HOST", "CORS_ORIGINS", "LOG_LEVEL", "SCHEMA_INIT"):
		app.config[key] = _env(key, app.config.get(key))
	app.config["PORT"] = int(_env("PORT", app.config.get("PORT", 3000)))
	if overrides:
		app.config.update(overrides)

	logging.basicConfig(
		level=str(app.config["LOG_LEVEL"]).upper(),
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)
	app.json.sort_keys = False

	if storage is None:
		storage = create_storage(app)
	app.extensions["storage"] = storage
	pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="ventas")
	app.extensions["ventas_pool"] = pool
	weakref.finalize(app, pool.shutdown, wait=False)

	if app.config["SCHEMA_INIT"] != "after_start":
		initialize(storage)

	@app.before_request
	def _check_format() -> None:
		fmt = request.args.get("format")
		if fmt is not None and fmt.strip().lower() not in {"json", "xml"}:
			raise BadRequest("format must be 'json' or 'xml'")

	@app.before_request
	def _serialize_body() -> None:
		# malformed JSON raises BadRequest (400) instead of reading as an empty body
		body = request.get_json() if request.is_json and request.get_data(cache=True) else None
		g.body = serialize_json_fields(body)

	@app.after_request
	def _cors(resp: Response) -> Response:
		resp.headers.setdefault("Access-Control-Allow-Origin", app.config["CORS_ORIGINS"])
		resp.headers.setdefault("Access-Control-Allow-Methods", "GET, POST, PUT, DELETE, OPTIONS")
		resp.headers.setdefault("Access-Control-Allow-Headers", "Content-Type, Authorization")
		return resp

	@app.get("/health")
	def health() -> Response:
		return api_response({"status": "ok"})

	# -------------------------
	# Clientes / Vendedores CRUD
	# -------------------------
	_register_persona_routes(app, "clientes", "Cliente")
	_register_persona_routes(app, "vendedores", "Vendedor")

	# -------------------------
	# Ventas CRUD
	# -------------------------
	@app.get("/api/ventas")
	def list_ventas() -> Response:
		try:
			rows = _storage().execute("SELECT * FROM ventas")
			return api_response(normalize_rows(rows))
		except Exception as e:
			return _handle_db_error(e)

	@app.get("/api/ventas/<venta_id>")
	def get_venta(venta_id: str) -> Response:
		try:
			storage = _storage()
			rows = storage.execute("SELECT * FROM ventas WHERE id = :id", {"id": venta_id})
			if not rows:
				return message_response("Venta no encontrada", 404)
			venta = normalize_row(rows[0])

			pool = current_app.extensions["ventas_pool"]
			cliente_future = pool.submit(_fetch_optional, storage, "clientes", venta.get("cliente_dni"))
			vendedor_future = pool.submit(_fetch_optional, storage, "vendedores", venta.get("vendedor_dni"))
			cliente = cliente_future.result()
			vendedor = vendedor_future.result()

			return api_response({"venta": venta, "cliente": cliente, "vendedor": vendedor})
		except Exception as e:
			return _handle_db_error(e)

	@app.post("/api/ventas")
	def create_venta() -> Response:
		body = _body()
		try:
			_storage().execute(
				"""
				INSERT INTO ventas (id, cliente_dni, vendedor_dni, fecha, productos, total)
				VALUES (:id, :cliente_dni, :vendedor_dni, :fecha, :productos, :total)
				""",
				_venta_params(body, body.get("id")),
			)
			return message_response("Venta creada exitosamente", 201)
		except Exception as e:
			return _handle_db_error(e)

	@app.put("/api/ventas/<venta_id>")
	def update_venta(venta_id: str) -> Response:
		body = _body()
		try:
			_storage().execute(
				"""
				UPDATE ventas
				SET cliente_dni = :cliente_dni, vendedor_dni = :vendedor_dni, fecha = :fecha,
					productos = :productos, total = :total
				WHERE id = :id
				""",
				_venta_params(body, venta_id),
			)
			return message_response("Venta actualizada exitosamente")
		except Exception as e:
			return _handle_db_error(e)

	@app.delete("/api/ventas/<venta_id>")
	def delete_venta(venta_id: str) -> Response:
		try:
			_storage().execute("DELETE FROM ventas WHERE id = :id", {"id": venta_id})
			return message_response("Venta eliminada exitosamente")
		except Exception as e:
			return _handle_db_error(e)

	# -------------------------
	# Consistent JSON/XML errors
	# -------------------------
	@app.errorhandler(HTTPException)
	def _http_error(err: HTTPException):
		resp = error_response(str(err.description or err.name), err.code or 500)
		allow = err.get_response().headers.get("Allow")
		if allow:
			resp.headers["Allow"] = allow
		return resp

	@app.errorhandler(Exception)
	def _unhandled(err: Exception):
		logger.exception("Error no controlado")
		return error_response(str(err), 500)

	return app


def main() -> None:
	app = create_app()
	port = app.config["PORT"]
	if app.config["SCHEMA_INIT"] == "after_start":
		# Listener comes up first; early requests may see missing tables.
		threading.Thread(target=initialize, args=(app.extensions["storage"],), daemon=True).start()
	logger.info("Servidor corriendo en http://localhost:%s", port)
	app.run(host=app.config["HOST"], port=port, threaded=True)


if __name__ == "__main__":
	main()

import os
import logging
from datetime import date
from functools import wraps

from flask import Flask, jsonify, request, abort
from flask_cors import CORS

from .analytics import AnalyticsEngine
from .catalog import CatalogStore, book_to_dict, copy_to_dict
from .circulation import CirculationEngine
from .config import Config
from .db import make_engine, make_session_factory
from .errors import CirculationError, ValidationError
from .members import MemberStore, member_to_dict
from .validation import parse_int

logger = logging.getLogger(__name__)


def create_app(config_object=Config, clock=date.today):
    logging.basicConfig(level=getattr(config_object, "LOG_LEVEL", "INFO"))

    app = Flask(__name__)
    app.config.from_object(config_object)
    CORS(app)

    # SQLAlchemy setup
    engine = make_engine(
        app.config["SQLALCHEMY_DATABASE_URI"], echo=app.config.get("SQLALCHEMY_ECHO", False)
    )
    SessionLocal = make_session_factory(engine)

    circulation = CirculationEngine(SessionLocal, config_object, clock=clock)
    analytics = AnalyticsEngine(SessionLocal, config_object, clock=clock)
    app.extensions["circulation"] = circulation
    app.extensions["analytics"] = analytics

    # ----------------- helpers -----------------

    def require_api_key(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            expected = app.config.get("SERVICE_API_KEY")
            sent = request.headers.get("X-API-Key")
            if not expected or sent != expected:
                logger.warning("Invalid API key on %s", request.path)
                abort(401, description="Invalid or missing service API key")
            return func(*args, **kwargs)

        return wrapper

    def json_body():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("request body must be a JSON object")
        return data

    def required_int(data, field):
        if data.get(field) is None:
            raise ValidationError(f"{field} is required")
        return parse_int(data[field], field)

    def query_int(name, default, minimum):
        raw = request.args.get(name)
        if raw is None:
            return default
        value = parse_int(raw, name)
        if value < minimum:
            raise ValidationError(f"{name} must be at least {minimum}")
        return value

    @app.errorhandler(CirculationError)
    def handle_circulation_error(err):
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(401)
    def handle_unauthorized(err):
        return jsonify({"error": "unauthorized", "reason": err.description}), 401

    # ----------------- health -----------------

    @app.get("/api/health")
    def health():
        return jsonify({"status": "ok", "service": "circulation_service"})

    # ----------------- circulation endpoints -----------------

    @app.post("/api/checkout")
    @require_api_key
    def checkout():
        data = json_body()
        txn = circulation.checkout(
            required_int(data, "member_id"),
            required_int(data, "book_copy_id"),
            due_date=data.get("due_date"),
            notes=data.get("notes"),
        )
        return jsonify({"transaction": txn}), 201

    @app.post("/api/checkin")
    @require_api_key
    def checkin():
        data = json_body()
        txn = circulation.checkin(
            required_int(data, "transaction_id"),
            returned_date=data.get("returned_date"),
            notes=data.get("notes"),
        )
        return jsonify({"transaction": txn})

    @app.post("/api/transactions/<int:transaction_id>/renew")
    @require_api_key
    def renew(transaction_id):
        return jsonify({"transaction": circulation.renew(transaction_id)})

    @app.post("/api/transactions/<int:transaction_id>/lost")
    @require_api_key
    def mark_lost(transaction_id):
        data = request.get_json(silent=True) or {}
        txn = circulation.mark_lost(transaction_id, notes=data.get("notes"))
        return jsonify({"transaction": txn})

    @app.get("/api/transactions/<int:transaction_id>")
    def get_transaction(transaction_id):
        return jsonify({"transaction": circulation.get_transaction(transaction_id)})

    @app.get("/api/transactions")
    def list_transactions():
        member_id = request.args.get("member_id")
        txns = circulation.list_transactions(
            member_id=parse_int(member_id, "member_id") if member_id else None,
            status=request.args.get("status"),
        )
        return jsonify({"transactions": txns})

    @app.post("/api/circulation/sweep")
    @require_api_key
    def sweep_overdue():
        """
        Called periodically by an external scheduler; there is no timer in-process.
        """
        result = circulation.sweep_overdue()
        return jsonify(result._asdict())

    # ----------------- fine endpoints -----------------

    @app.post("/api/fines/<int:fine_id>/pay")
    @require_api_key
    def pay_fine(fine_id):
        data = request.get_json(silent=True) or {}
        return jsonify({"fine": circulation.pay_fine(fine_id, paid_date=data.get("paid_date"))})

    @app.post("/api/fines/<int:fine_id>/waive")
    @require_api_key
    def waive_fine(fine_id):
        return jsonify({"fine": circulation.waive_fine(fine_id)})

    @app.post("/api/fines/<int:fine_id>/dispute")
    @require_api_key
    def dispute_fine(fine_id):
        return jsonify({"fine": circulation.dispute_fine(fine_id)})

    # ----------------- book endpoints -----------------

    @app.post("/api/books")
    @require_api_key
    def create_book():
        data = json_body()
        session = SessionLocal()
        try:
            catalog = CatalogStore(session)
            book = catalog.create_book(data)
            for _ in range(parse_int(data.get("copies", 0), "copies")):
                catalog.add_copy(book.id, data.get("condition", "good"))
            session.commit()
            session.refresh(book)
            return jsonify({"book": book_to_dict(book, with_copies=True)}), 201
        finally:
            session.close()

    @app.get("/api/books")
    def search_books():
        """
        Local search by title/author/genre/isbn substring.
        """
        session = SessionLocal()
        try:
            books = CatalogStore(session).search_books(
                title=request.args.get("title"),
                author=request.args.get("author"),
                genre=request.args.get("genre"),
                isbn=request.args.get("isbn"),
                available_only=request.args.get("available_only", "").lower() in ("1", "true", "yes"),
                limit=query_int("limit", 50, minimum=1),
                offset=query_int("offset", 0, minimum=0),
            )
            return jsonify({"books": [book_to_dict(b) for b in books]})
        finally:
            session.close()

    @app.get("/api/books/<int:book_id>")
    def get_book(book_id):
        session = SessionLocal()
        try:
            book = CatalogStore(session).get_book(book_id)
            return jsonify({"book": book_to_dict(book, with_copies=True)})
        finally:
            session.close()

    @app.put("/api/books/<int:book_id>")
    @require_api_key
    def update_book(book_id):
        data = json_body()
        session = SessionLocal()
        try:
            book = CatalogStore(session).update_book(book_id, data)
            session.commit()
            return jsonify({"book": book_to_dict(book)})
        finally:
            session.close()

    @app.delete("/api/books/<int:book_id>")
    @require_api_key
    def delete_book(book_id):
        session = SessionLocal()
        try:
            CatalogStore(session).delete_book(book_id)
            session.commit()
            return "", 204
        finally:
            session.close()

    @app.post("/api/books/<int:book_id>/copies")
    @require_api_key
    def add_copy(book_id):
        data = request.get_json(silent=True) or {}
        session = SessionLocal()
        try:
            copy = CatalogStore(session).add_copy(book_id, data.get("condition", "good"))
            session.commit()
            return jsonify({"copy": copy_to_dict(copy)}), 201
        finally:
            session.close()

    @app.get("/api/books/<int:book_id>/copies")
    def list_copies(book_id):
        available_only = request.args.get("available_only", "").lower() in ("1", "true", "yes")
        session = SessionLocal()
        try:
            catalog = CatalogStore(session)
            if available_only:
                copies = catalog.list_available_copies(book_id)
            else:
                copies = catalog.list_copies(book_id)
            return jsonify({"copies": [copy_to_dict(c) for c in copies]})
        finally:
            session.close()

    @app.get("/api/books/<int:book_id>/availability")
    def book_availability(book_id):
        session = SessionLocal()
        try:
            return jsonify(CatalogStore(session).book_availability(book_id))
        finally:
            session.close()

    @app.patch("/api/copies/<int:copy_id>")
    @require_api_key
    def update_copy(copy_id):
        data = json_body()
        if "status" not in data and "condition" not in data:
            raise ValidationError("status or condition is required")
        session = SessionLocal()
        try:
            catalog = CatalogStore(session)
            copy = catalog.get_copy(copy_id)
            if "condition" in data:
                copy = catalog.update_copy_condition(copy_id, data["condition"])
            if "status" in data and data["status"] != copy.status:
                copy = catalog.change_copy_status(copy_id, data["status"])
            session.commit()
            return jsonify({"copy": copy_to_dict(copy)})
        finally:
            session.close()

    @app.delete("/api/copies/<int:copy_id>")
    @require_api_key
    def remove_copy(copy_id):
        session = SessionLocal()
        try:
            CatalogStore(session).remove_copy(copy_id)
            session.commit()
            return "", 204
        finally:
            session.close()

    @app.get("/api/inventory")
    def inventory():
        session = SessionLocal()
        try:
            return jsonify(CatalogStore(session).inventory())
        finally:
            session.close()

    # ----------------- member endpoints -----------------

    @app.post("/api/members")
    @require_api_key
    def create_member():
        data = json_body()
        session = SessionLocal()
        try:
            member = MemberStore(session, config_object).create_member(data)
            session.commit()
            return jsonify({"member": member_to_dict(member)}), 201
        finally:
            session.close()

    @app.get("/api/members")
    def search_members():
        session = SessionLocal()
        try:
            members = MemberStore(session, config_object).search_members(
                query=request.args.get("query"),
                status=request.args.get("status"),
            )
            return jsonify({"members": [member_to_dict(m) for m in members]})
        finally:
            session.close()

    @app.get("/api/members/<int:member_id>")
    def get_member(member_id):
        session = SessionLocal()
        try:
            member = MemberStore(session, config_object).get_member(member_id)
            return jsonify({"member": member_to_dict(member)})
        finally:
            session.close()

    @app.put("/api/members/<int:member_id>")
    @require_api_key
    def update_member(member_id):
        data = json_body()
        session = SessionLocal()
        try:
            member = MemberStore(session, config_object).update_member(member_id, data)
            session.commit()
            return jsonify({"member": member_to_dict(member)})
        finally:
            session.close()

    @app.delete("/api/members/<int:member_id>")
    @require_api_key
    def delete_member(member_id):
        session = SessionLocal()
        try:
            MemberStore(session, config_object).delete_member(member_id)
            session.commit()
            return "", 204
        finally:
            session.close()

    @app.get("/api/members/<int:member_id>/status")
    def member_status(member_id):
        session = SessionLocal()
        try:
            return jsonify(
                MemberStore(session, config_object).borrowing_status(member_id, clock())
            )
        finally:
            session.close()

    @app.get("/api/members/<int:member_id>/fines")
    def member_fines(member_id):
        return jsonify(circulation.member_fines(member_id, status=request.args.get("status")))

    @app.get("/api/members/<int:member_id>/activity")
    def member_activity(member_id):
        return jsonify(analytics.member_activity(member_id))

    # ----------------- analytics endpoints -----------------

    @app.get("/api/analytics/popular/<timeframe>")
    def popular_books(timeframe):
        kwargs = {
            "limit": query_int("limit", 20, minimum=1),
            "genre": request.args.get("genre"),
            "min_borrows": query_int("min_borrows", 1, minimum=0),
        }
        if request.args.get("with_stats", "").lower() in ("1", "true", "yes"):
            return jsonify(analytics.popular_books_with_stats(timeframe, **kwargs))
        return jsonify(analytics.popular_books(timeframe, **kwargs))

    @app.get("/api/analytics/dashboard")
    def dashboard():
        return jsonify(analytics.dashboard(recent_limit=query_int("recent_limit", 10, minimum=0)))

    @app.get("/api/analytics/stats")
    def library_stats():
        return jsonify(analytics.library_stats())

    return app


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    create_app().run(host="0.0.0.0", port=port, debug=True)

import logging

from flask import Blueprint, jsonify, request, session
from sqlalchemy.sql import text

import borrow_records
import borrow_requests
import catalog
import copies
import inventory
from access import STAFF_ROLES, current_caller, login_required
from database import db, retry_db_operation
from errors import ForbiddenError, NotFoundError, ValidationError
from models import BorrowRecord, Copy
from utils import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, parse_bool, parse_datetime, parse_id, parse_int

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')


def _body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _field(data, name):
    """Read a snake_case key, falling back to its camelCase spelling."""
    if name in data:
        return data[name]
    head, *rest = name.split('_')
    return data.get(head + ''.join(part.title() for part in rest))


def _arg(name):
    return _field(request.args, name)


def _list_response(query):
    page = parse_int(request.args.get('page'), 'page', 1, minimum=1)
    limit = parse_int(request.args.get('limit'), 'limit', DEFAULT_PAGE_SIZE, minimum=1, maximum=MAX_PAGE_SIZE)
    result = query.paginate(page=page, per_page=limit, error_out=False)
    pagination = {'page': result.page, 'limit': result.per_page, 'total': result.total, 'pages': result.pages}
    return jsonify({'data': [item.to_dict() for item in result.items], 'pagination': pagination}), 200


def _require_owner_or_scope(user_id, library_id, entity_id):
    caller = current_caller()
    if caller.is_staff:
        caller.require_library(library_id, entity_id)
    elif user_id != caller.user_id:
        logger.error(f"Access denied: user_id={caller.user_id} reading entity of user_id={user_id}")
        raise ForbiddenError('Access denied', entity_id)


def _require_self_or_staff(user_id):
    caller = current_caller()
    if not caller.is_staff and user_id != caller.user_id:
        raise ForbiddenError('Access denied', user_id)


@api.route('/test-db', methods=['GET'])
@retry_db_operation()
def test_db():
    db.session.execute(text('SELECT 1'))
    logger.debug("Database test query successful")
    return jsonify({'message': 'Database connection successful'}), 200


# auth

@api.route('/auth/register', methods=['POST'])
@retry_db_operation()
def register():
    data = _body()
    logger.debug(f"Register request for: {data.get('email')}")
    user = catalog.register_user(
        name=data.get('name'),
        email=data.get('email'),
        password=data.get('password'),
        role=data.get('role', 'guest'),
        student_id=_field(data, 'student_id'),
    )
    return jsonify({'message': 'User registered successfully', 'user': user.to_dict()}), 201


@api.route('/auth/login', methods=['POST'])
@retry_db_operation()
def login():
    data = _body()
    if 'email' not in data or 'password' not in data:
        logger.error("Invalid login payload")
        return jsonify({'error': 'Missing email or password'}), 400
    user = catalog.authenticate(data['email'], data['password'])
    if not user:
        return jsonify({'error': 'Invalid credentials'}), 401
    session['user_id'] = user.id
    logger.debug(f"Session created for user: {user.email}, session['user_id']={session['user_id']}")
    return jsonify({'message': 'Login successful', 'user': user.to_dict()}), 200


@api.route('/auth/logout', methods=['POST'])
def logout():
    session.pop('user_id', None)
    logger.debug("User logged out")
    return jsonify({'message': 'Logout successful'}), 200


@api.route('/auth/me', methods=['GET'])
@login_required()
def me():
    return jsonify({'user': catalog.get_user(current_caller().user_id).to_dict()}), 200


# users

@api.route('/users', methods=['POST'])
@login_required('superadmin')
@retry_db_operation()
def create_user():
    data = _body()
    library_ids = [parse_id(value, 'library id') for value in data.get('libraries') or []]
    user = catalog.create_staff_user(
        name=data.get('name'),
        email=data.get('email'),
        password=data.get('password'),
        role=data.get('role', 'admin'),
        library_ids=library_ids,
    )
    return jsonify({'user': user.to_dict()}), 201


@api.route('/users/pending', methods=['GET'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def get_pending_users():
    return _list_response(catalog.find_pending_users())


@api.route('/users/<int:user_id>', methods=['PATCH'])
@login_required('superadmin')
@retry_db_operation()
def update_user(user_id):
    data = _body()
    library_ids = data.get('libraries')
    if library_ids is not None:
        library_ids = [parse_id(value, 'library id') for value in library_ids]
    user = catalog.update_user_access(user_id, status=data.get('status'), library_ids=library_ids)
    return jsonify({'user': user.to_dict()}), 200


# libraries

@api.route('/libraries', methods=['GET'])
@retry_db_operation()
def get_libraries():
    return _list_response(catalog.list_libraries())


@api.route('/libraries', methods=['POST'])
@login_required('superadmin')
@retry_db_operation()
def add_library():
    data = _body()
    contact = {name: data.get(name) for name in ('address', 'city', 'country', 'email', 'phone')}
    library = catalog.create_library(data.get('code'), data.get('name'), **contact)
    return jsonify({'library': library.to_dict()}), 201


@api.route('/libraries/<int:library_id>', methods=['DELETE'])
@login_required('superadmin')
@retry_db_operation()
def delete_library(library_id):
    catalog.delete_library(library_id)
    return jsonify({'message': 'Library deleted successfully'}), 200


# titles

@api.route('/titles', methods=['GET'])
@retry_db_operation()
def get_titles():
    return _list_response(catalog.search_titles(request.args.get('search', '')))


@api.route('/titles/<int:title_id>', methods=['GET'])
@retry_db_operation()
def get_title(title_id):
    return jsonify({'title': catalog.get_title(title_id).to_dict()}), 200


@api.route('/titles', methods=['POST'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def add_title():
    data = _body()
    metadata = {
        name: _field(data, name)
        for name in ('subtitle', 'categories', 'language', 'publisher', 'published_year', 'description')
        if _field(data, name) is not None
    }
    title = catalog.create_title(
        data.get('title'),
        data.get('authors'),
        isbn13=data.get('isbn13'),
        isbn10=data.get('isbn10'),
        **metadata,
    )
    return jsonify({'title': title.to_dict()}), 201


@api.route('/titles/<int:title_id>', methods=['DELETE'])
@login_required('superadmin')
@retry_db_operation()
def delete_title(title_id):
    catalog.delete_title(title_id)
    return jsonify({'message': 'Title deleted successfully'}), 200


# inventories

@api.route('/inventories', methods=['GET'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def get_inventories():
    caller = current_caller()
    items = inventory.list_inventories(
        library_ids=caller.library_scope(parse_id(_arg('library_id'), 'libraryId', required=False)),
        title_id=parse_id(_arg('title_id'), 'titleId', required=False),
        available_only=parse_bool(_arg('available_only')),
    )
    return _list_response(items)


@api.route('/inventories/available', methods=['GET'])
@retry_db_operation()
def get_available_inventories():
    items = inventory.find_available(parse_id(_arg('library_id'), 'libraryId', required=False))
    return _list_response(items)


@api.route('/inventories/<int:inventory_id>', methods=['GET'])
@login_required()
@retry_db_operation()
def get_inventory(inventory_id):
    return jsonify({'inventory': inventory.get_inventory(inventory_id).to_dict()}), 200


@api.route('/inventories', methods=['POST'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def add_inventory():
    data = _body()
    library_id = parse_id(_field(data, 'library_id'), 'libraryId')
    current_caller().require_library(library_id)
    created = inventory.create_inventory(
        library_id,
        parse_id(_field(data, 'title_id'), 'titleId'),
        shelf_location=_field(data, 'shelf_location'),
        notes=data.get('notes'),
    )
    return jsonify({'inventory': created.to_dict()}), 201


@api.route('/inventories/<int:inventory_id>', methods=['PATCH'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def edit_inventory(inventory_id):
    data = _body()
    current_caller().require_library(inventory.get_inventory(inventory_id).library_id, inventory_id)
    fields = {name: _field(data, name) for name in inventory.UPDATABLE_FIELDS if _field(data, name) is not None}
    updated = inventory.update_inventory(inventory_id, **fields)
    return jsonify({'inventory': updated.to_dict()}), 200


@api.route('/inventories/<int:inventory_id>', methods=['DELETE'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def delete_inventory(inventory_id):
    current_caller().require_library(inventory.get_inventory(inventory_id).library_id, inventory_id)
    inventory.delete_inventory(inventory_id)
    return jsonify({'message': 'Inventory deleted successfully'}), 200


@api.route('/inventories/<int:inventory_id>/recompute', methods=['POST'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def recompute_inventory(inventory_id):
    current_caller().require_library(inventory.get_inventory(inventory_id).library_id, inventory_id)
    return jsonify({'inventory': inventory.refresh_inventory(inventory_id).to_dict()}), 200


# copies

@api.route('/copies', methods=['GET'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def get_copies():
    items = copies.list_copies(
        library_id=parse_id(_arg('library_id'), 'libraryId', required=False),
        title_id=parse_id(_arg('title_id'), 'titleId', required=False),
        inventory_id=parse_id(_arg('inventory_id'), 'inventoryId', required=False),
        status=request.args.get('status'),
        condition=request.args.get('condition'),
    )
    return _list_response(items)


@api.route('/copies/available', methods=['GET'])
@login_required()
@retry_db_operation()
def get_available_copies():
    items = copies.find_available_copies(
        library_id=parse_id(_arg('library_id'), 'libraryId', required=False),
        title_id=parse_id(_arg('title_id'), 'titleId', required=False),
    )
    return _list_response(items)


@api.route('/copies/barcode/<barcode>', methods=['GET'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def get_copy_by_barcode(barcode):
    copy = copies.find_by_barcode(barcode, parse_id(_arg('library_id'), 'libraryId', required=False))
    if copy is None:
        raise NotFoundError('Copy not found', barcode)
    return jsonify({'copy': copy.to_dict()}), 200


@api.route('/copies/<int:copy_id>', methods=['GET'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def get_copy(copy_id):
    return jsonify({'copy': copies.get_copy(copy_id).to_dict()}), 200


@api.route('/copies', methods=['POST'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def add_copy():
    data = _body()
    library_id = parse_id(_field(data, 'library_id'), 'libraryId')
    current_caller().require_library(library_id)
    copy = copies.create_copy(
        library_id,
        parse_id(_field(data, 'title_id'), 'titleId'),
        inventory_id=parse_id(_field(data, 'inventory_id'), 'inventoryId', required=False),
        barcode=data.get('barcode'),
        status=data.get('status') or 'available',
        condition=data.get('condition') or 'good',
        shelf_location=_field(data, 'shelf_location'),
        acquired_at=parse_datetime(_field(data, 'acquired_at'), 'acquisition'),
    )
    return jsonify({'message': 'Copy created successfully', 'copy': copy.to_dict()}), 201


@api.route('/copies/<int:copy_id>', methods=['PATCH'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def edit_copy(copy_id):
    data = _body()
    current_caller().require_library(copies.get_copy(copy_id).library_id, copy_id)
    fields = {name: _field(data, name) for name in copies.UPDATABLE_FIELDS if _field(data, name) is not None}
    if 'acquired_at' in fields:
        fields['acquired_at'] = parse_datetime(fields['acquired_at'], 'acquisition')
    copy = copies.update_copy(copy_id, **fields)
    return jsonify({'copy': copy.to_dict()}), 200


@api.route('/copies/<int:copy_id>/barcode', methods=['POST'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def generate_barcode(copy_id):
    current_caller().require_library(copies.get_copy(copy_id).library_id, copy_id)
    copy = copies.assign_barcode(copy_id)
    return jsonify({'barcode': copy.barcode, 'copy': copy.to_dict()}), 200


@api.route('/copies/<int:copy_id>', methods=['DELETE'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def delete_copy(copy_id):
    current_caller().require_library(copies.get_copy(copy_id).library_id, copy_id)
    copies.delete_copy(copy_id)
    return jsonify({'message': 'Copy deleted successfully'}), 200


# borrow requests

@api.route('/borrow-requests', methods=['POST'])
@login_required()
@retry_db_operation()
def create_borrow_request():
    data = _body()
    logger.debug(f"Borrow request data: {data}")
    created = borrow_requests.create_request(
        current_caller().user_id,
        parse_id(_field(data, 'library_id'), 'libraryId'),
        parse_id(_field(data, 'title_id'), 'titleId'),
        notes=data.get('notes'),
    )
    return jsonify({'message': 'Borrow request created successfully', 'request': created.to_dict()}), 201


@api.route('/borrow-requests', methods=['GET'])
@login_required()
@retry_db_operation()
def get_borrow_requests():
    caller = current_caller()
    items = borrow_requests.list_requests(
        library_ids=caller.library_scope(parse_id(_arg('library_id'), 'libraryId', required=False)),
        user_id=caller.user_scope(parse_id(_arg('user_id'), 'userId', required=False)),
        title_id=parse_id(_arg('title_id'), 'titleId', required=False),
        status=request.args.get('status'),
    )
    return _list_response(items)


@api.route('/borrow-requests/pending', methods=['GET'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def get_pending_requests():
    caller = current_caller()
    scope = caller.library_scope(parse_id(_arg('library_id'), 'libraryId', required=False))
    return _list_response(borrow_requests.find_pending(library_ids=scope))


@api.route('/borrow-requests/user/<int:user_id>', methods=['GET'])
@login_required()
@retry_db_operation()
def get_user_requests(user_id):
    _require_self_or_staff(user_id)
    return _list_response(borrow_requests.find_by_user(user_id, status=request.args.get('status')))


@api.route('/borrow-requests/title/<int:title_id>', methods=['GET'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def get_title_requests(title_id):
    scope = current_caller().library_scope(parse_id(_arg('library_id'), 'libraryId', required=False))
    return _list_response(borrow_requests.find_by_title(title_id, library_ids=scope))


@api.route('/borrow-requests/<int:request_id>', methods=['GET'])
@login_required()
@retry_db_operation()
def get_borrow_request(request_id):
    found = borrow_requests.get_request(request_id)
    _require_owner_or_scope(found.user_id, found.library_id, request_id)
    return jsonify({'request': found.to_dict()}), 200


@api.route('/borrow-requests/<int:request_id>', methods=['PATCH'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def decide_borrow_request(request_id):
    data = _body()
    status = data.get('status')
    logger.debug(f"Decision {status} for borrow request id={request_id}")
    decided = borrow_requests.decide_request(request_id, current_caller(), status, notes=data.get('notes'))
    payload = {'message': f'Request {status} successfully', 'request': decided.to_dict()}
    if decided.record_id:
        payload['record'] = db.session.get(BorrowRecord, decided.record_id).to_dict()
        payload['copy'] = db.session.get(Copy, decided.copy_id).to_dict()
    return jsonify(payload), 200


@api.route('/borrow-requests/<int:request_id>/cancel', methods=['POST'])
@login_required()
@retry_db_operation()
def cancel_borrow_request(request_id):
    cancelled = borrow_requests.cancel_request(request_id, current_caller().user_id)
    return jsonify({'message': 'Request cancelled successfully', 'request': cancelled.to_dict()}), 200


# borrow records

@api.route('/borrow-records', methods=['GET'])
@login_required()
@retry_db_operation()
def get_borrow_records():
    caller = current_caller()
    items = borrow_records.list_records(
        library_ids=caller.library_scope(parse_id(_arg('library_id'), 'libraryId', required=False)),
        user_id=caller.user_scope(parse_id(_arg('user_id'), 'userId', required=False)),
        status=request.args.get('status'),
        overdue=parse_bool(request.args.get('overdue')),
    )
    return _list_response(items)


@api.route('/borrow-records/active', methods=['GET'])
@login_required()
@retry_db_operation()
def get_active_loans():
    caller = current_caller()
    items = borrow_records.find_active(
        user_id=caller.user_scope(parse_id(_arg('user_id'), 'userId', required=False)),
        library_ids=caller.library_scope(parse_id(_arg('library_id'), 'libraryId', required=False)),
    )
    return _list_response(items)


@api.route('/borrow-records/overdue', methods=['GET'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def get_overdue_records():
    scope = current_caller().library_scope(parse_id(_arg('library_id'), 'libraryId', required=False))
    return _list_response(borrow_records.find_overdue(library_ids=scope))


@api.route('/borrow-records/user/<int:user_id>/history', methods=['GET'])
@login_required()
@retry_db_operation()
def get_user_history(user_id):
    _require_self_or_staff(user_id)
    # ``limit`` is the page size here as everywhere else; ``max`` caps the history
    cap = parse_int(request.args.get('max'), 'max', borrow_records.DEFAULT_HISTORY_LIMIT, minimum=1)
    return _list_response(borrow_records.find_by_user(user_id, limit=cap))


@api.route('/borrow-records/<int:record_id>', methods=['GET'])
@login_required()
@retry_db_operation()
def get_borrow_record(record_id):
    record = borrow_records.get_record(record_id)
    _require_owner_or_scope(record.user_id, record.library_id, record_id)
    return jsonify({'record': record.to_dict()}), 200


@api.route('/borrow-records/<int:record_id>/return', methods=['POST'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def return_book(record_id):
    data = _body()
    record = borrow_records.mark_returned(record_id, fees=data.get('fees'), actor=current_caller())
    return jsonify({'message': 'Book returned successfully', 'record': record.to_dict()}), 200


@api.route('/borrow-records/<int:record_id>/lost', methods=['POST'])
@login_required(*STAFF_ROLES)
@retry_db_operation()
def mark_lost(record_id):
    data = _body()
    record = borrow_records.mark_lost(record_id, fees=data.get('fees'), actor=current_caller())
    return jsonify({'message': 'Record marked as lost', 'record': record.to_dict()}), 200

from app import create_app
from borrow_requests import create_request, decide_request
from catalog import create_library, create_staff_user, create_title, register_user, update_user_access
from copies import create_copy
from database import db

app = create_app({'SCHEDULER_ENABLED': False})

with app.app_context():
    # Reset the database
    db.drop_all()
    db.create_all()
    print("🔄 Database reset")

    # Insert Libraries
    libraries = [
        {"code": "CEN", "name": "Central Library", "city": "Springfield"},
        {"code": "NTH", "name": "North Branch", "city": "Springfield"},
    ]
    created_libraries = {}
    for l in libraries:
        library = create_library(l["code"], l["name"], city=l["city"])
        created_libraries[library.code] = library
    print("✅ Libraries inserted")

    # Insert Users
    create_staff_user("Super Admin", "superadmin@example.com", "admin123", role="superadmin")
    admin = create_staff_user(
        "Central Admin", "admin@example.com", "admin123", role="admin",
        library_ids=[created_libraries["CEN"].id],
    )
    student = register_user("Student One", "student1@example.com", "student123", role="student", student_id="S-1001")
    update_user_access(student.id, status="active")
    register_user("Guest One", "guest1@example.com", "guest123")
    print("✅ Users inserted")

    # Insert Titles and Copies
    titles = [
        {"title": "Python Programming", "authors": ["John Zelle"], "isbn13": "9781590282410", "categories": ["Programming"], "published_year": 2017, "copies": {"CEN": 3, "NTH": 2}},
        {"title": "Flask Web Development", "authors": ["Miguel Grinberg"], "isbn13": "9781491991732", "categories": ["Web"], "published_year": 2018, "copies": {"CEN": 2}},
        {"title": "Clean Code", "authors": ["Robert C. Martin"], "isbn13": "9780132350884", "categories": ["Software"], "published_year": 2008, "copies": {"NTH": 1}},
    ]
    created_titles = {}
    for t in titles:
        title = create_title(
            t["title"],
            t["authors"],
            isbn13=t["isbn13"],
            categories=t["categories"],
            published_year=t["published_year"],
        )
        created_titles[title.title] = title
        for code, count in t["copies"].items():
            for _ in range(count):
                create_copy(created_libraries[code].id, title.id)
    print("✅ Titles and copies inserted")

    # Insert a sample loan
    borrow_request = create_request(student.id, created_libraries["CEN"].id, created_titles["Python Programming"].id)
    decided = decide_request(borrow_request.id, admin.id, "approved")
    print(f"✅ Loan inserted: {student.name} borrowed 'Python Programming' (record id {decided.record_id})")

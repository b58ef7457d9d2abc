"""
Sample data insertion script for the book review application.
Run this to populate the active backend (MongoDB or local files) with test data.
"""
import data


sample_users = [
    {"name": "Ahmed", "email": "ahmed@example.com", "password": "password123"},
    {"name": "Sarah", "email": "sarah@example.com", "password": "password123"},
    {"name": "John", "email": "john@example.com", "password": "password123"},
]

sample_books = [
    {
        "title": "The Pragmatic Programmer",
        "author": "Andrew Hunt",
        "description": "A practical guide to software craftsmanship, from personal responsibility to architectural techniques.",
        "genre": "Technology",
        "publishedYear": 1999,
        "addedBy": "ahmed@example.com",
    },
    {
        "title": "Dune",
        "author": "Frank Herbert",
        "description": "A desert planet, a noble family and the most valuable substance in the universe.",
        "genre": "Science Fiction",
        "publishedYear": 1965,
        "addedBy": "sarah@example.com",
    },
    {
        "title": "The Hound of the Baskervilles",
        "author": "Arthur Conan Doyle",
        "description": "Sherlock Holmes investigates the legend of a supernatural hound on Dartmoor.",
        "genre": "Mystery",
        "publishedYear": 1902,
        "addedBy": "ahmed@example.com",
    },
    {
        "title": "Sapiens",
        "author": "Yuval Noah Harari",
        "description": "A brief history of humankind, from the Stone Age to the twenty-first century.",
        "genre": "History",
        "publishedYear": 2011,
        "addedBy": "john@example.com",
    },
]

# (book title, reviewer email, rating, text)
sample_reviews = [
    ("Dune", "ahmed@example.com", 5, "A masterpiece of world-building."),
    ("Dune", "john@example.com", 4, "Slow start, brilliant finish."),
    ("The Pragmatic Programmer", "sarah@example.com", 4, "Still relevant decades later."),
    ("Sapiens", "ahmed@example.com", 3, "Interesting, if a little sweeping."),
]


def insert_sample_data():
    """Replace all stored data with the sample users, books and reviews."""
    data.reset_storage()
    print("Cleared existing data.")

    users = {}
    for user in sample_users:
        users[user["email"]] = data.create_user(user["name"], user["email"], user["password"])
    print(f"Inserted {len(users)} sample users.")

    books = {}
    for book in sample_books:
        fields = {k: v for k, v in book.items() if k != "addedBy"}
        books[book["title"]] = data.create_book(fields, users[book["addedBy"]])
    print(f"Inserted {len(books)} sample books.")

    for title, email, rating, text in sample_reviews:
        data.add_review(books[title]["_id"], users[email]["_id"], rating, text)
    print(f"Inserted {len(sample_reviews)} sample reviews.")

    print("\nInserted books:")
    for title, book in books.items():
        stored = data.get_book(book["_id"])
        print(f"  - [{stored['genre']}] {title} by {stored['author']} "
              f"({stored['averageRating']} from {stored['totalReviews']} reviews)")

    print("\n✓ Sample data insertion complete!")
    print("  Log in with any sample email and password 'password123'.")


if __name__ == '__main__':
    data.connect()
    insert_sample_data()

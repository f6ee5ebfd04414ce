"""SQLite persistence shared by all runtime modules."""

import os
import tempfile
import unittest

from tests.helpers.temp_db import TempDbSandbox, assert_safe_temp_db_path


class TempDbHelperTest(unittest.TestCase):
    def test_temp_db_create_and_cleanup(self) -> None:
        sandbox = TempDbSandbox(prefix="temp_db_sanity")
        db_path = sandbox.db_path
        temp_dir = sandbox.temp_dir

        self.assertTrue(os.path.exists(temp_dir))
        self.assertTrue(db_path.startswith(tempfile.gettempdir()))

        db = sandbox.create_schema()
        row = db.execute("SELECT COUNT(*) AS total FROM request_items").fetchone()
        self.assertEqual(int(row["total"]), 0)

        sandbox.cleanup()
        self.assertFalse(os.path.exists(db_path))
        self.assertFalse(os.path.exists(temp_dir))

    def test_connection_factory_opens_fresh_connections(self) -> None:
        sandbox = TempDbSandbox(prefix="temp_db_factory")
        try:
            sandbox.create_schema()
            factory = sandbox.connection_factory()
            first, second = factory(), factory()
            try:
                self.assertIsNot(first, second)
                self.assertEqual(first.backend, "sqlite")
            finally:
                first.close()
                second.close()
        finally:
            sandbox.cleanup()

    def test_disallow_workspace_paths(self) -> None:
        workspace_db = os.path.join(os.getcwd(), "site_procurement_test.db")
        with self.assertRaises(ValueError):
            assert_safe_temp_db_path(workspace_db)


if __name__ == "__main__":
    unittest.main()

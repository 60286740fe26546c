import json
import unittest

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ridebook.cache import RequestCache
from ridebook.errors import ExternalServiceError, InvalidInputError, NotFoundError
from ridebook.sheets import (
    GoogleSheetsClient,
    InMemorySheetsClient,
    ServiceAccountCredentials,
    Workbook,
    col_index,
    col_letter,
    parse_a1,
)


def _private_key_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


class A1NotationTests(unittest.TestCase):
    def test_column_letters(self):
        self.assertEqual(col_letter(1), "A")
        self.assertEqual(col_letter(15), "O")
        self.assertEqual(col_letter(27), "AA")
        self.assertEqual(col_index("J"), 10)
        self.assertEqual(col_index("AA"), 27)

    def test_parse_ranges(self):
        rng = parse_a1("AllRequests!A1:O1")
        self.assertEqual((rng.title, rng.start_col, rng.start_row, rng.end_col, rng.end_row), (
            "AllRequests",
            1,
            1,
            15,
            1,
        ))
        open_ended = parse_a1("AllRequests!A2:A")
        self.assertEqual((open_ended.start_row, open_ended.end_col, open_ended.end_row), (2, 1, None))
        whole = parse_a1("'USR_u1_2025-03'!J4:J")
        self.assertEqual(whole.title, "USR_u1_2025-03")
        self.assertEqual(whole.start_col, 10)

    def test_range_without_title_is_rejected(self):
        with self.assertRaises(InvalidInputError):
            parse_a1("A1:B2")


class GoogleSheetsClientTests(unittest.IsolatedAsyncioTestCase):
    @classmethod
    def setUpClass(cls):
        cls.private_key = _private_key_pem()

    async def asyncSetUp(self):
        self.calls = []
        self.status = 200

        def handler(request: httpx.Request) -> httpx.Response:
            self.calls.append(request)
            if request.url.host == "oauth2.googleapis.com":
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
            if self.status != 200:
                return httpx.Response(self.status, text="backend unavailable")
            if request.method == "GET" and "/values/" in request.url.path:
                return httpx.Response(200, json={"values": [["a", "b"], ["c"]]})
            return httpx.Response(200, json={})

        self.http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.cache = RequestCache()
        credentials = ServiceAccountCredentials("svc@example.iam.gserviceaccount.com", self.private_key)
        self.client = GoogleSheetsClient("sheet-123", credentials, self.http, self.cache)

    async def asyncTearDown(self):
        await self.http.aclose()

    async def test_token_is_fetched_once_per_request_context(self):
        rows = await self.client.values_get("AllRequests!A2:A")
        await self.client.values_get("AllRequests!A2:A")

        self.assertEqual(rows, [["a", "b"], ["c"]])
        token_calls = [c for c in self.calls if c.url.host == "oauth2.googleapis.com"]
        self.assertEqual(len(token_calls), 1)
        sheet_call = self.calls[-1]
        self.assertEqual(sheet_call.headers["Authorization"], "Bearer tok")
        self.assertIn("/v4/spreadsheets/sheet-123/values/", sheet_call.url.path)

    async def test_update_sends_user_entered_rows(self):
        await self.client.values_update("AllRequests!N2:N2", [["confirmed"]])
        request = self.calls[-1]
        self.assertEqual(request.method, "PUT")
        self.assertEqual(request.url.params["valueInputOption"], "USER_ENTERED")
        self.assertEqual(json.loads(request.content)["values"], [["confirmed"]])

    async def test_append_inserts_rows(self):
        await self.client.values_append("AllRequests!A:A", [["tr_1"]])
        request = self.calls[-1]
        self.assertEqual(request.method, "POST")
        self.assertTrue(request.url.path.endswith(":append"))
        self.assertEqual(request.url.params["insertDataOption"], "INSERT_ROWS")

    async def test_batch_update_posts_ordered_requests(self):
        requests = [{"addSheet": {"properties": {"title": "X"}}}, {"sortRange": {}}]
        await self.client.batch_update(requests)
        self.assertEqual(json.loads(self.calls[-1].content), {"requests": requests})

    async def test_non_2xx_raises_external_service_error(self):
        self.status = 503
        with self.assertRaises(ExternalServiceError) as ctx:
            await self.client.values_get("AllRequests!A1:O1")
        self.assertEqual(ctx.exception.status, 503)
        self.assertIsInstance(ctx.exception, IOError)

    def test_missing_spreadsheet_id(self):
        credentials = ServiceAccountCredentials("svc@example.com", self.private_key)
        with self.assertRaises(InvalidInputError):
            GoogleSheetsClient("", credentials, self.http, self.cache)


class WorkbookTests(unittest.IsolatedAsyncioTestCase):
    async def test_formula_separator_follows_locale(self):
        self.assertEqual(
            await Workbook(InMemorySheetsClient("de_AT"), RequestCache()).formula_arg_sep(), ";"
        )
        self.assertEqual(
            await Workbook(InMemorySheetsClient("en_US"), RequestCache()).formula_arg_sep(), ","
        )

    async def test_ensure_sheet_refreshes_metadata(self):
        client = InMemorySheetsClient()
        workbook = Workbook(client, RequestCache())
        self.assertFalse(await workbook.has_sheet("USR_u1_2025-03"))

        self.assertTrue(await workbook.ensure_sheet("USR_u1_2025-03"))
        self.assertFalse(await workbook.ensure_sheet("USR_u1_2025-03"))
        self.assertEqual(await workbook.sheet_id("USR_u1_2025-03"), 0)
        with self.assertRaises(NotFoundError):
            await workbook.sheet_id("missing")

    async def test_in_memory_reads_trim_trailing_blanks(self):
        client = InMemorySheetsClient()
        client.add_sheet("S")
        await client.values_update("S!A1:C2", [["a", "", ""], ["", "", ""]])
        self.assertEqual(await client.values_get("S!A1:C5"), [["a"]])
        self.assertEqual(await client.values_get("S!B1:B"), [])


if __name__ == "__main__":
    unittest.main()

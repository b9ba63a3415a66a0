import io
import json
import zipfile

from exporter import EXPORT_COLUMNS


def seed(client, headers):
    client.post("/api/categories", headers=headers, json={"name": "Food", "type": "expense"})
    client.post("/api/categories", headers=headers, json={"name": "Salary", "type": "income"})
    for date, amount in (("2025-01-10", 20), ("2025-02-05", 30), ("2025-02-20", 15.5)):
        client.post(
            "/api/expenses",
            headers=headers,
            json={"date": date, "amount": amount, "category": "Food", "notes": "weekly shop"},
        )
    client.post(
        "/api/income",
        headers=headers,
        json={"date": "2025-02-28", "amount": 2000, "category": "Salary"},
    )
    client.post(
        "/api/budgets",
        headers=headers,
        json={"budgets": [{"category": "Food", "monthly_amount": 250}]},
    )


def test_export_json_all(client, headers):
    seed(client, headers)
    res = client.get("/api/export?format=json", headers=headers)
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("application/json")
    assert 'filename="finance-export_' in res.headers["content-disposition"]
    assert res.headers["content-disposition"].endswith('.json"')

    doc = json.loads(res.content)
    assert doc["metadata"]["user_email"] == "ana@example.com"
    assert doc["metadata"]["scope"] == "all"
    assert doc["metadata"]["format"] == "json"
    assert len(doc["expenses"]) == 3
    assert doc["expenses"][0]["date"] == "2025-01-10"
    assert doc["expenses"][0]["amount"] == 20
    assert [c["name"] for c in doc["expense_categories"]] == ["Food"]
    assert [c["name"] for c in doc["income_categories"]] == ["Salary"]
    assert doc["budgets"][0]["monthly_amount"] == 250


def test_export_month_scope_filters_dated_tables(client, headers):
    seed(client, headers)
    res = client.get("/api/export?format=json&scope=month&year=2025&month=2", headers=headers)
    doc = json.loads(res.content)

    assert [e["date"] for e in doc["expenses"]] == ["2025-02-05", "2025-02-20"]
    assert len(doc["incomes"]) == 1
    # configuration tables are always complete
    assert len(doc["budgets"]) == 1
    assert doc["metadata"]["year"] == 2025
    assert doc["metadata"]["month"] == 2


def test_export_zip_contents(client, headers):
    seed(client, headers)
    res = client.get("/api/export", headers=headers)
    assert res.status_code == 200
    assert res.headers["content-type"] == "application/zip"

    with zipfile.ZipFile(io.BytesIO(res.content)) as archive:
        names = set(archive.namelist())
        assert names == {"metadata.json"} | {f"{t}.csv" for t in EXPORT_COLUMNS}

        metadata = json.loads(archive.read("metadata.json"))
        assert metadata["format"] == "zip"

        expenses = archive.read("expenses.csv").decode("utf-8").splitlines()
        assert expenses[0] == ";".join(EXPORT_COLUMNS["expenses"])
        assert len(expenses) == 4

        # nothing recorded, header only
        assert archive.read("cash_snapshots.csv").decode("utf-8") == (
            ";".join(EXPORT_COLUMNS["cash_snapshots"]) + "\n"
        )


def test_export_zip_reimports_into_fresh_account(client, headers, other_headers):
    seed(client, headers)
    res = client.get("/api/export", headers=headers)
    with zipfile.ZipFile(io.BytesIO(res.content)) as archive:
        expenses_csv = archive.read("expenses.csv").decode("utf-8")

    imported = client.post(
        "/api/import",
        headers=other_headers,
        json={"kind": "expense", "text": expenses_csv, "delimiter": ";"},
    )
    assert imported.status_code == 200
    assert imported.json()["created"] == 3

    original = client.get("/api/expenses", headers=headers).json()
    copied = client.get("/api/expenses", headers=other_headers).json()
    assert [(e["date"], float(e["amount"]), e["category"], e["notes"]) for e in copied] == [
        (e["date"], float(e["amount"]), e["category"], e["notes"]) for e in original
    ]


def test_export_zip_reimports_awkward_notes(client, headers, other_headers):
    res = client.post(
        "/api/expenses",
        headers=headers,
        json={
            "date": "2025-03-01",
            "amount": 8,
            "category": "Food",
            "notes": 'dinner; "la tasca"\nsplit with Bruno',
        },
    )
    assert res.status_code == 201
    rejected = client.post(
        "/api/expenses",
        headers=headers,
        json={"date": "2025-03-01", "amount": 8, "category": "Food;Drinks"},
    )
    assert rejected.status_code == 400

    export = client.get("/api/export", headers=headers)
    with zipfile.ZipFile(io.BytesIO(export.content)) as archive:
        expenses_csv = archive.read("expenses.csv").decode("utf-8")
    assert len(expenses_csv.splitlines()) == 2

    imported = client.post(
        "/api/import",
        headers=other_headers,
        json={"kind": "expense", "text": expenses_csv, "delimiter": ";"},
    ).json()
    assert imported["created"] == 1
    assert imported["summary"]["invalid"] == 0

    copied = client.get("/api/expenses", headers=other_headers).json()
    assert copied[0]["category"] == "Food"
    assert copied[0]["notes"] == "dinner, 'la tasca' split with Bruno"
    cats = client.get("/api/categories?type=expense", headers=other_headers).json()
    assert [c["name"] for c in cats] == ["Food"]


def test_export_only_contains_own_data(client, headers, other_headers):
    seed(client, headers)
    doc = json.loads(client.get("/api/export?format=json", headers=other_headers).content)
    assert all(doc[table] == [] for table in EXPORT_COLUMNS)


def test_export_invalid_parameters(client, headers):
    assert client.get("/api/export?format=xml", headers=headers).status_code == 400
    assert client.get("/api/export?scope=week", headers=headers).status_code == 400
    res = client.get("/api/export?scope=month&year=2025&month=13", headers=headers)
    assert res.status_code == 400


def test_export_failure_returns_500(client, headers, monkeypatch):
    import exporter

    def boom(*args, **kwargs):
        raise exporter.ExportError("disk full")

    monkeypatch.setattr(exporter, "build_export", boom)
    res = client.get("/api/export", headers=headers)
    assert res.status_code == 500
    assert res.json() == {"error": "Export failed"}


def test_export_requires_auth(client):
    assert client.get("/api/export").status_code in (401, 403)

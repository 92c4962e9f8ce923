from tradie_sms.datastore import InMemoryTable, eq_formula


def test_eq_formula_builds_airtable_equality():
    assert eq_formula(**{"Tenant ID": "t1"}) == "{Tenant ID}='t1'"
    combined = eq_formula(**{"Tenant ID": "t1", "Client Phone": "+61412345678"})
    assert combined.startswith("AND(")
    assert "{Tenant ID}='t1'" in combined
    assert "{Client Phone}='+61412345678'" in combined


def test_in_memory_table_understands_generated_formulas():
    table = InMemoryTable("Clients")
    table.create({"Tenant ID": "t1", "Name": "O'Brien Electrical"})
    table.create({"Tenant ID": "t1", "Name": "Acme"})
    table.create({"Tenant ID": "t2", "Name": "Acme"})

    names = [r["fields"]["Name"] for r in table.all(formula=eq_formula(**{"Name": "O'Brien Electrical"}))]
    acme_t2 = table.all(formula=eq_formula(**{"Tenant ID": "t2", "Name": "Acme"}))

    assert names == ["O'Brien Electrical"]
    assert len(acme_t2) == 1
    assert acme_t2[0]["fields"]["Tenant ID"] == "t2"

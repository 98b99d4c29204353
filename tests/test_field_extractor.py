from __future__ import annotations

from velocity.field_extractor import (
    build_conditions,
    build_red_flags,
    build_summary,
    extract_fields,
    pick_borrower_name,
    pick_credit_score,
    pick_largest_amount,
    pick_ssn_last4,
)

SAMPLE = """
Loan application form 1003
Full Name Olivia Martinez
Email: olivia.martinez@example.com
Date of Birth: 08/30/1991
SSN: 901-23-4567
Address: 123 Birch St, Cleveland, OH 44102
Employer Address: 500 Techway Dr, Cleveland, OH 44102
Annual Income: $88,000
Loan Amount Requested: $325,000.00
Credit Score: 725
Notes: one late payment reported; no bankruptcy on file.
"""


def test_extract_fields_on_sample_application():
    out = extract_fields(SAMPLE)
    extracted = out["extracted"]

    assert extracted["borrower"] == "Olivia Martinez"
    assert extracted["fullName"] == "Olivia Martinez"
    assert extracted["email"] == "olivia.martinez@example.com"
    assert extracted["dob"] == "08/30/1991"
    assert extracted["ssnLast4"] == "4567"
    assert extracted["income"] == 325_000.0
    assert extracted["loanAmount"] == 325_000.0
    assert extracted["creditScore"] == 725
    assert extracted["address"] == "123 Birch St, Cleveland, OH 44102"
    assert extracted["employerAddress"] == "500 Techway Dr, Cleveland, OH 44102"
    assert [c["label"] for c in out["conditions"]] == ["Bankruptcy mention", "Late payment mention"]
    assert out["redFlags"] == ["bankruptcy"]


def test_borrower_label_with_colon():
    assert pick_borrower_name("Borrower: Jane Doe\nLoan 1") == "Jane Doe"


def test_borrower_plain_name_line():
    assert pick_borrower_name("LOAN FILE 2024\nJOHN SMITH\n") == "JOHN SMITH"


def test_borrower_missing():
    assert pick_borrower_name("loan file\n12345") == ""


def test_largest_amount_respects_ceiling():
    text = "Price $12,500,000 Loan $450,000 Income $95,000"

    assert pick_largest_amount(text, ceiling=10_000_000) == 450_000.0
    assert pick_largest_amount(text, ceiling=100_000) == 95_000.0
    assert pick_largest_amount("no money here", ceiling=100) is None


def test_credit_score_label_then_range_fallback():
    assert pick_credit_score("credit score: 640") == 640
    assert pick_credit_score("Ref 123, FICO 702") == 702
    assert pick_credit_score("Ref 123 only") is None


def test_ssn_plain_digits():
    assert pick_ssn_last4("ssn 901234567") == "4567"
    assert pick_ssn_last4("no ssn") == ""


def test_summary_is_compacted_and_clipped():
    assert build_summary("a \n\n b\tc") == "a b c"
    long = build_summary("word " * 1000)
    assert len(long) == 1801
    assert long.endswith("…")


def test_conditions_and_red_flags():
    text = "Prior FORECLOSURE and a judgment; account in collections; charge off noted; fraud alert"

    severities = {c["label"]: c["severity"] for c in build_conditions(text)}

    assert severities == {
        "Collections mention": "med",
        "Foreclosure mention": "high",
        "Judgment mention": "high",
        "Charge-off mention": "med",
    }
    assert build_red_flags(text) == ["foreclosure", "judgment", "fraud", "charge off", "collections"]

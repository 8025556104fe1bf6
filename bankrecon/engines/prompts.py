"""Prompts for the structured-extraction tiers."""

OUTPUT_SCHEMA_DESCRIPTION = """Return ONLY a JSON object with exactly this shape:
{
  "pageStartBalance": number | null,
  "pageEndBalance": number | null,
  "transactions": [
    {
      "date": "YYYY-MM-DD",
      "direction": "INCOMING" | "OUTGOING",
      "amount": number,
      "payee": string | null,
      "description": string | null,
      "reference": string | null,
      "counterpartyIban": string | null
    }
  ],
  "metadata": {"sequenceNumber": integer | null, "statementDate": "YYYY-MM-DD" | null}
}"""

BANK_STATEMENT_SYSTEM_PROMPT = f"""You extract transactions from ONE page of a bank statement.

Rules:
- amount is always positive; direction says whether money came in (INCOMING) or went out (OUTGOING).
- pageStartBalance is the balance carried into this page (opening / brought forward).
- pageEndBalance is the balance at the bottom of this page (closing / carried forward).
- If a balance is not printed on the page, return null. Never compute or guess a balance.
- A description that wraps onto several lines belongs to ONE transaction.
- Ignore subtotal, balance-only and header rows.
- Numbers may use "1.234,56" or "1,234.56" notation; return plain decimals (1234.56).

{OUTPUT_SCHEMA_DESCRIPTION}"""

VISION_REPAIR_PROMPT = f"""You are repairing a failed bank statement page extraction.

You receive the rendered page image, the raw text layer and the PREVIOUS_JSON produced by
a text-only model. PREVIOUS_JSON failed the balance check:
opening + incoming - outgoing did not equal the closing balance, or a balance was missing.

Use the image as ground truth. Typical faults to fix:
- one transaction split into two because its description wrapped across lines
- a debit recorded as a credit or the reverse
- digits misread in an amount or balance
- opening/closing balances missing or swapped

{OUTPUT_SCHEMA_DESCRIPTION}"""

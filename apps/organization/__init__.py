"""
Organization reference data: companies, departments and employees.

Only the slice the access-control core depends on lives here: users wrap
employees, and roles may be scoped to a department or company.
"""

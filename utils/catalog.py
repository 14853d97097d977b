"""
Static option lists shared by the complaint and account forms
"""

COMPLAINT_CATEGORIES = {
    'academic': [
        'Unfair grading',
        'Incompetent faculty',
        'Lack of academic support',
        'Course content issues',
        'Unreasonable workload',
    ],
    'health and safety': [
        'Unsafe conditions',
        'Health services issues',
        'Mental health support',
        'Emergency response',
        'COVID-19 protocols',
    ],
    'technology and digital': [
        'Wi-Fi connectivity',
        'Learning management system',
        'Computer lab issues',
        'Software access',
        'IT support',
    ],
    'student life and extracurricular': [
        'Club/organization issues',
        'Event planning problems',
        'Discrimination in activities',
        'Lack of opportunities',
        'Funding issues',
    ],
    'disciplinary and behavioral': [
        'Unfair punishment',
        'Bullying/harassment',
        'Code of conduct issues',
        'Reporting process',
        'Appeal process',
    ],
    'facilities and infrastructure': [
        'Classroom conditions',
        'Dormitory issues',
        'Cafeteria/food quality',
        'Accessibility concerns',
        'Maintenance problems',
    ],
    'administrative': [
        'Registration issues',
        'Financial aid problems',
        'Transcript errors',
        'Scheduling conflicts',
        'Staff responsiveness',
    ],
}

DEPARTMENTS = [
    'Computer Science',
    'Information Technology',
    'Cyber Security',
    'Software Engineering',
    'Data Science',
    'Artificial Intelligence',
    'Electrical Engineering',
    'Mechanical Engineering',
    'Civil Engineering',
    'Business Administration',
]

PROGRAMS = ['ADP', 'BS', 'Masters', 'MPhil', 'PhD']

SEMESTERS = [str(i) for i in range(1, 9)]

BATCHES = ['fall', 'spring']

ATTENDANCE_MODES = ['regular', 'weekends']


def category_label(category: str) -> str:
    """'health and safety' -> 'Health and safety'"""
    return category[:1].upper() + category[1:]


def is_valid_subcategory(category: str, subcategory: str) -> bool:
    options = COMPLAINT_CATEGORIES.get(category.lower())
    if options is None:
        return False
    return subcategory.lower() in (s.lower() for s in options)


def get_catalog():
    return {
        'categories': [
            {'value': key, 'label': category_label(key), 'subcategories': subs}
            for key, subs in COMPLAINT_CATEGORIES.items()
        ],
        'departments': DEPARTMENTS,
        'programs': PROGRAMS,
        'semesters': SEMESTERS,
        'batches': BATCHES,
        'attendance_modes': ATTENDANCE_MODES,
    }

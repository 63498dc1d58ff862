class LearningError(Exception):
    pass


class LessonNotFound(LearningError):
    def __init__(self, lesson_id):
        super().__init__("Lesson not found")
        self.lesson_id = lesson_id


class QuestionNotFound(LearningError):
    def __init__(self, question_id):
        super().__init__("Question not found")
        self.question_id = question_id


class ModuleNotFound(LearningError):
    def __init__(self, module_id):
        super().__init__("Module not found")
        self.module_id = module_id
